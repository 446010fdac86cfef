"""Typed access to the treasury contract.

Reads return snapshots; writes go through TransactionSender with either the
operator identity (settlement bookkeeping) or the admin identity (account,
request and contract administration).
"""
from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3
from web3.logs import DISCARD

from .chain_tx import TransactionSender
from .models import AccountSnapshot, RequestSnapshot, WriteResult
from .retry import RetryPolicy, call_with_retry
from .utils import ZERO_ADDRESS, as_int, to_hex, truncate

log = logging.getLogger(__name__)

REASON_LIMIT = 256


def _uint(raw: Any) -> int:
    """Decimal-string amount to int; empty means zero (\"unchanged\" to the contract)."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return 0
    value = as_int(raw)
    if value is None or value < 0:
        raise ValueError(f"invalid_amount:{raw!r}")
    return value


def _address(raw: Optional[str]) -> str:
    text = str(raw or "").strip()
    return AsyncWeb3.to_checksum_address(text or ZERO_ADDRESS)


def _chains(raw: Iterable[Any]) -> list[int]:
    return [int(c) for c in raw]


class TreasuryGateway:
    def __init__(
        self,
        contract: Any,
        sender: TransactionSender,
        operator: LocalAccount,
        admin: LocalAccount,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.contract = contract
        self.sender = sender
        self.operator = operator
        self.admin = admin
        self.policy = policy or RetryPolicy()

    # ── reads ──

    async def _read(self, call: Any, label: str) -> Any:
        return await call_with_retry(lambda: call.call(), policy=self.policy, label=label)

    async def get_account(self, account_id: int) -> AccountSnapshot:
        raw = await self._read(self.contract.functions.getAccount(int(account_id)), f"getAccount({account_id})")
        return AccountSnapshot.from_chain(account_id, raw)

    async def get_request(self, request_id: int) -> RequestSnapshot:
        raw = await self._read(self.contract.functions.getRequest(int(request_id)), f"getRequest({request_id})")
        return RequestSnapshot.from_chain(request_id, raw)

    async def get_next_account_id(self) -> int:
        raw = await self._read(self.contract.functions.nextAccountId(), "nextAccountId")
        return as_int(raw) or 0

    # ── write plumbing ──

    async def _write(self, call: Any, account: LocalAccount, label: str) -> Any:
        return await self.sender.send(call, account, label)

    async def _write_hash(self, call: Any, account: LocalAccount, label: str) -> str:
        receipt = await self._write(call, account, label)
        return to_hex(receipt.get("transactionHash"))

    def _event_id(self, receipt: Any, event_name: str, arg: str) -> int:
        event = getattr(self.contract.events, event_name)
        try:
            decoded = event().process_receipt(receipt, errors=DISCARD)
        except Exception as exc:
            log.warning("%s decode failed: %s", event_name, exc)
            decoded = ()
        for item in decoded:
            value = as_int(item["args"].get(arg))
            if value is not None:
                return value
        log.warning("%s event missing from receipt tx=%s; returning id 0",
                    event_name, to_hex(receipt.get("transactionHash")))
        return 0

    # ── operator writes ──

    async def mark_spend_executed(self, request_id: int, rail_transfer_id: str) -> str:
        log.info("marking spend %d executed rail_transfer_id=%s", request_id, rail_transfer_id)
        call = self.contract.functions.markSpendExecuted(int(request_id), str(rail_transfer_id))
        return await self._write_hash(call, self.operator, f"markSpendExecuted({request_id})")

    async def mark_spend_failed(self, request_id: int, reason: str) -> str:
        reason = truncate(reason, REASON_LIMIT)
        log.info("marking spend %d failed: %s", request_id, reason)
        call = self.contract.functions.markSpendFailed(int(request_id), reason)
        return await self._write_hash(call, self.operator, f"markSpendFailed({request_id})")

    async def record_inbound_funding(self, amount: str, rail_tx_id: str) -> str:
        call = self.contract.functions.recordInboundFunding(_uint(amount), str(rail_tx_id))
        return await self._write_hash(call, self.operator, "recordInboundFunding")

    # ── admin writes: accounts ──

    async def create_spend_account(
        self,
        owner: str,
        label: str,
        budget_per_period: str,
        period_duration: int,
        per_tx_limit: str,
        daily_limit: str,
        approval_threshold: str,
        approver: str,
        allowed_chains: Iterable[int],
    ) -> WriteResult:
        call = self.contract.functions.createSpendAccount(
            _address(owner),
            str(label),
            _uint(budget_per_period),
            int(period_duration),
            _uint(per_tx_limit),
            _uint(daily_limit),
            _uint(approval_threshold),
            _address(approver),
            _chains(allowed_chains),
        )
        receipt = await self._write(call, self.admin, "createSpendAccount")
        return WriteResult(
            tx_hash=to_hex(receipt.get("transactionHash")),
            new_id=self._event_id(receipt, "SpendAccountCreated", "accountId"),
        )

    async def update_spend_account(
        self,
        account_id: int,
        budget_per_period: str = "",
        per_tx_limit: str = "",
        daily_limit: str = "",
        approval_threshold: str = "",
        approver: str = "",
    ) -> str:
        call = self.contract.functions.updateSpendAccount(
            int(account_id),
            _uint(budget_per_period),
            _uint(per_tx_limit),
            _uint(daily_limit),
            _uint(approval_threshold),
            _address(approver),
        )
        return await self._write_hash(call, self.admin, f"updateSpendAccount({account_id})")

    async def freeze_account(self, account_id: int) -> str:
        return await self._write_hash(
            self.contract.functions.freezeAccount(int(account_id)), self.admin, f"freezeAccount({account_id})"
        )

    async def unfreeze_account(self, account_id: int) -> str:
        return await self._write_hash(
            self.contract.functions.unfreezeAccount(int(account_id)), self.admin, f"unfreezeAccount({account_id})"
        )

    async def close_account(self, account_id: int) -> str:
        return await self._write_hash(
            self.contract.functions.closeAccount(int(account_id)), self.admin, f"closeAccount({account_id})"
        )

    async def update_allowed_chains(self, account_id: int, allowed_chains: Iterable[int]) -> str:
        call = self.contract.functions.updateAllowedChains(int(account_id), _chains(allowed_chains))
        return await self._write_hash(call, self.admin, f"updateAllowedChains({account_id})")

    async def set_auto_topup_config(self, account_id: int, min_balance: str, target_balance: str) -> str:
        call = self.contract.functions.setAutoTopupConfig(
            int(account_id), _uint(min_balance), _uint(target_balance)
        )
        return await self._write_hash(call, self.admin, f"setAutoTopupConfig({account_id})")

    async def auto_topup(self, account_id: int) -> str:
        return await self._write_hash(
            self.contract.functions.autoTopup(int(account_id)), self.admin, f"autoTopup({account_id})"
        )

    async def sweep_account(self, account_id: int) -> str:
        return await self._write_hash(
            self.contract.functions.sweepAccount(int(account_id)), self.admin, f"sweepAccount({account_id})"
        )

    async def reset_period(self, account_id: int) -> str:
        return await self._write_hash(
            self.contract.functions.resetPeriod(int(account_id)), self.admin, f"resetPeriod({account_id})"
        )

    # ── admin writes: requests ──

    async def request_spend(
        self,
        account_id: int,
        amount: str,
        chain_id: int,
        destination_address: str,
        description: str = "",
    ) -> WriteResult:
        call = self.contract.functions.requestSpend(
            int(account_id),
            _uint(amount),
            int(chain_id),
            _address(destination_address),
            str(description),
        )
        receipt = await self._write(call, self.admin, f"requestSpend(account={account_id})")
        return WriteResult(
            tx_hash=to_hex(receipt.get("transactionHash")),
            new_id=self._event_id(receipt, "SpendRequested", "requestId"),
        )

    async def approve_spend(self, request_id: int) -> str:
        return await self._write_hash(
            self.contract.functions.approveSpend(int(request_id)), self.admin, f"approveSpend({request_id})"
        )

    async def reject_spend(self, request_id: int, reason: str) -> str:
        call = self.contract.functions.rejectSpend(int(request_id), truncate(reason, REASON_LIMIT))
        return await self._write_hash(call, self.admin, f"rejectSpend({request_id})")

    # ── admin writes: contract ──

    async def pause(self) -> str:
        return await self._write_hash(self.contract.functions.pause(), self.admin, "pause")

    async def unpause(self) -> str:
        return await self._write_hash(self.contract.functions.unpause(), self.admin, "unpause")

    async def transfer_admin(self, new_admin: str) -> str:
        call = self.contract.functions.transferAdmin(_address(new_admin))
        return await self._write_hash(call, self.admin, "transferAdmin")
