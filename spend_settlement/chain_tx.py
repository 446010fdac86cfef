from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, Web3RPCError

from .errors import TransactionRevertedError
from .retry import RetryPolicy, call_with_retry
from .utils import to_hex

log = logging.getLogger(__name__)


@dataclass(slots=True)
class GasSettings:
    gas_multiplier: float = 1.2
    gas_floor: int = 100_000
    gas_cap: int = 2_000_000
    priority_fee_gwei: float = 1.0
    max_fee_base_multiplier: float = 2.0
    legacy_gas_price_multiplier: float = 1.2
    receipt_timeout_seconds: float = 120.0


def _already_known(exc: BaseException) -> bool:
    text = str(exc).lower()
    return "already known" in text or "known transaction" in text


class TransactionSender:
    """Build, sign, send and confirm one contract call.

    Each RPC step is retried on its own so that a retry never re-signs
    with a fresh nonce once the raw transaction has been broadcast.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        *,
        chain_id: Optional[int] = None,
        gas: Optional[GasSettings] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.w3 = w3
        self.chain_id = chain_id
        self.gas = gas or GasSettings()
        self.policy = policy or RetryPolicy()

    async def _rpc(self, fn: Any, label: str) -> Any:
        return await call_with_retry(fn, policy=self.policy, label=label)

    async def _chain_id(self) -> int:
        if self.chain_id is None:
            self.chain_id = int(await self._rpc(lambda: self.w3.eth.chain_id, "eth_chainId"))
        return int(self.chain_id)

    async def _estimate(self, call: Any, sender: str, label: str) -> int:
        cfg = self.gas
        try:
            estimate = int(await self._rpc(lambda: call.estimate_gas({"from": sender}), f"{label}:estimate"))
            estimate = int(estimate * float(cfg.gas_multiplier))
        except ContractLogicError:
            raise
        except Exception as exc:
            log.debug("%s: gas estimate failed (%s), using floor %d", label, exc, cfg.gas_floor)
            estimate = int(cfg.gas_floor)
        gas_limit = max(int(cfg.gas_floor), estimate)
        return min(gas_limit, int(cfg.gas_cap))

    async def _fees(self, label: str) -> Dict[str, int]:
        cfg = self.gas
        block = await self._rpc(lambda: self.w3.eth.get_block("latest"), f"{label}:block")
        base_fee = block.get("baseFeePerGas") if hasattr(block, "get") else None
        if base_fee is not None:
            priority_fee = int(self.w3.to_wei(float(cfg.priority_fee_gwei), "gwei"))
            max_fee = int(float(base_fee) * float(cfg.max_fee_base_multiplier)) + priority_fee
            return {
                "maxPriorityFeePerGas": max(priority_fee, 0),
                "maxFeePerGas": max(max_fee, priority_fee),
            }
        gas_price = await self._rpc(lambda: self.w3.eth.gas_price, f"{label}:gas_price")
        return {"gasPrice": max(int(float(gas_price) * float(cfg.legacy_gas_price_multiplier)), 1)}

    async def send(self, call: Any, account: LocalAccount, label: str) -> Any:
        """Run *call* (a bound contract function) as *account*; returns the receipt."""
        sender = account.address
        nonce = await self._rpc(
            lambda: self.w3.eth.get_transaction_count(sender, "pending"), f"{label}:nonce"
        )
        tx: Dict[str, Any] = {
            "chainId": await self._chain_id(),
            "from": sender,
            "nonce": int(nonce),
            "gas": await self._estimate(call, sender, label),
        }
        tx.update(await self._fees(label))
        tx = await call.build_transaction(tx)

        signed = account.sign_transaction(tx)
        raw = getattr(signed, "raw_transaction", None)
        if raw is None:
            raw = getattr(signed, "rawTransaction", None)
        if raw is None:
            raise RuntimeError("signed_tx_missing_raw")
        local_hash = to_hex(getattr(signed, "hash", b""))

        async def _broadcast() -> str:
            try:
                return to_hex(await self.w3.eth.send_raw_transaction(raw))
            except Web3RPCError as exc:
                # A retried broadcast of the same raw tx is a success.
                if local_hash and _already_known(exc):
                    return local_hash
                raise

        tx_hash = await self._rpc(_broadcast, f"{label}:send")
        log.info("%s: sent tx=%s nonce=%d gas=%d", label, tx_hash, tx["nonce"], tx["gas"])

        receipt = await self._rpc(
            lambda: self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=float(self.gas.receipt_timeout_seconds)
            ),
            f"{label}:receipt",
        )
        if int(receipt.get("status", 0)) == 0:
            raise TransactionRevertedError(tx_hash, label)
        log.info("%s: confirmed tx=%s block=%s", label, tx_hash, receipt.get("blockNumber"))
        return receipt
