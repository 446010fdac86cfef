"""Exception taxonomy for the settlement core."""
from __future__ import annotations


class SettlementError(RuntimeError):
    """Base class for errors raised by the settlement core."""


class UnsupportedChainError(SettlementError):
    """A chain id has no domain mapping, contract addresses or wallet.

    Fatal input error: never retried.
    """

    def __init__(self, chain_id: int, detail: str) -> None:
        super().__init__(detail)
        self.chain_id = int(chain_id)


class RequestNotFoundError(SettlementError):
    def __init__(self, request_id: int) -> None:
        super().__init__(f"spend request {request_id} not found")
        self.request_id = int(request_id)


class InvalidStatusError(SettlementError):
    def __init__(self, request_id: int, status: str) -> None:
        super().__init__(
            f"spend request {request_id} is not executable (current status: {status})"
        )
        self.request_id = int(request_id)
        self.status = status


class RailResponseError(SettlementError):
    """The settlement rail answered, but without a usable attestation."""


class TransactionRevertedError(SettlementError):
    def __init__(self, tx_hash: str, label: str) -> None:
        super().__init__(f"transaction reverted: {label} tx={tx_hash}")
        self.tx_hash = tx_hash
        self.label = label


class JobAlreadyActiveError(SettlementError):
    def __init__(self, dedupe_key: str) -> None:
        super().__init__(f"job already waiting or active for key {dedupe_key}")
        self.dedupe_key = dedupe_key
