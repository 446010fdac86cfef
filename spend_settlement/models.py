"""Domain types shared across the settlement core."""
from __future__ import annotations

import datetime as dt
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .utils import amount_str, as_int, from_unix, lower_address


# ──────────────────────────────────────────────────────────────
# Status / alert enums
# ──────────────────────────────────────────────────────────────

class SpendStatus(str, Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    EXECUTING = "EXECUTING"
    EXECUTED = "EXECUTED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (SpendStatus.EXECUTED, SpendStatus.REJECTED, SpendStatus.FAILED)


EXECUTABLE_STATUSES = frozenset({SpendStatus.APPROVED, SpendStatus.EXECUTING})


class AccountStatus(int, Enum):
    """On-chain account status enum."""
    ACTIVE = 0
    FROZEN = 1
    CLOSED = 2


class AlertType(str, Enum):
    ACCOUNT_FROZEN = "ACCOUNT_FROZEN"
    ACCOUNT_CLOSED = "ACCOUNT_CLOSED"
    ADMIN_TRANSFERRED = "ADMIN_TRANSFERRED"
    CONTRACT_PAUSED = "CONTRACT_PAUSED"


class AlertSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


# ──────────────────────────────────────────────────────────────
# Bus event names
# ──────────────────────────────────────────────────────────────

SPEND_REQUESTED = "spend.requested"
SPEND_APPROVED = "spend.approved"
SPEND_REJECTED = "spend.rejected"
SPEND_EXECUTED = "spend.executed"
SPEND_FAILED = "spend.failed"
ACCOUNT_CREATED = "account.created"
ACCOUNT_UPDATED = "account.updated"
ACCOUNT_FROZEN = "account.frozen"
ACCOUNT_UNFROZEN = "account.unfrozen"
ACCOUNT_CLOSED = "account.closed"
FUNDING_INBOUND = "funding.inbound"
ADMIN_TRANSFERRED = "admin.transferred"
CONTRACT_PAUSED = "contract.paused"
CONTRACT_UNPAUSED = "contract.unpaused"


# ──────────────────────────────────────────────────────────────
# Domain events (published by ingestion)
# ──────────────────────────────────────────────────────────────

@dataclass(slots=True)
class SpendRequested:
    request_id: int
    account_id: int
    requester_address: str
    amount: str
    chain_id: int
    destination_address: str
    description: str
    block_number: int
    tx_hash: str
    timestamp: dt.datetime


@dataclass(slots=True)
class SpendApproved:
    request_id: int
    account_id: int
    approver_address: str
    amount: str
    block_number: int
    tx_hash: str
    timestamp: dt.datetime


@dataclass(slots=True)
class SpendRejected:
    request_id: int
    account_id: int
    approver_address: str
    reason: str
    block_number: int
    tx_hash: str
    timestamp: dt.datetime


@dataclass(slots=True)
class SpendExecuted:
    request_id: int
    account_id: int
    amount: str
    rail_transfer_id: str
    block_number: int
    tx_hash: str
    timestamp: dt.datetime


@dataclass(slots=True)
class SpendFailed:
    request_id: int
    account_id: int
    reason: str
    block_number: int
    tx_hash: str
    timestamp: dt.datetime


@dataclass(slots=True)
class AccountEvent:
    """created / updated / frozen / unfrozen / closed all carry the same shape;
    the mirror always re-reads the account from chain."""
    kind: str
    account_id: int
    block_number: int
    tx_hash: str
    timestamp: dt.datetime
    owner_address: Optional[str] = None
    label: Optional[str] = None


@dataclass(slots=True)
class InboundFunding:
    amount: str
    rail_tx_id: str
    block_number: int
    tx_hash: str
    timestamp: dt.datetime


@dataclass(slots=True)
class AdminTransferred:
    previous_admin: str
    new_admin: str
    block_number: int
    tx_hash: str
    timestamp: dt.datetime


@dataclass(slots=True)
class ContractPauseChanged:
    paused: bool
    block_number: int
    tx_hash: str
    timestamp: dt.datetime


# ──────────────────────────────────────────────────────────────
# Chain snapshots (authoritative state read through the gateway)
# ──────────────────────────────────────────────────────────────

ACCOUNT_FIELDS = (
    "owner", "approver", "label", "budgetPerPeriod", "periodDuration",
    "perTxLimit", "dailyLimit", "approvalThreshold", "periodSpent",
    "periodReserved", "dailySpent", "dailyReserved", "periodStart",
    "lastDayTimestamp", "status", "allowedChains", "minBalance",
    "targetBalance",
)

REQUEST_FIELDS = (
    "accountId", "requester", "amount", "chainId", "destinationAddress",
    "description", "createdAt", "approved", "rejected", "executed",
    "gatewayTxId",
)


def _named(raw: Any, names: Sequence[str]) -> Dict[str, Any]:
    """Struct results arrive as tuples or as mappings depending on decoder."""
    if isinstance(raw, Mapping):
        return {n: raw.get(n) for n in names}
    if isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)):
        values = list(raw)
        if len(values) == 1 and isinstance(values[0], (tuple, list)):
            values = list(values[0])
        return {n: (values[i] if i < len(values) else None) for i, n in enumerate(names)}
    return {n: getattr(raw, n, None) for n in names}


def _optional_amount(raw: Any) -> Optional[str]:
    value = as_int(raw)
    if not value:
        return None
    return str(value)


@dataclass(slots=True)
class AccountSnapshot:
    account_id: int
    owner_address: str
    approver_address: str
    label: str
    budget_per_period: str
    period_duration: int
    per_tx_limit: str
    daily_limit: str
    approval_threshold: str
    period_spent: str
    period_reserved: str
    daily_spent: str
    daily_reserved: str
    period_start: Optional[dt.datetime]
    daily_reset_at: Optional[dt.datetime]
    status: AccountStatus
    allowed_chains: List[int] = field(default_factory=list)
    auto_topup_min_balance: Optional[str] = None
    auto_topup_target_balance: Optional[str] = None

    @property
    def frozen(self) -> bool:
        return self.status == AccountStatus.FROZEN

    @property
    def closed(self) -> bool:
        return self.status == AccountStatus.CLOSED

    @classmethod
    def from_chain(cls, account_id: int, raw: Any) -> "AccountSnapshot":
        d = _named(raw, ACCOUNT_FIELDS)
        status_raw = as_int(d["status"]) or 0
        try:
            status = AccountStatus(status_raw)
        except ValueError:
            status = AccountStatus.ACTIVE
        return cls(
            account_id=int(account_id),
            owner_address=lower_address(d["owner"]),
            approver_address=lower_address(d["approver"]),
            label=str(d["label"] or ""),
            budget_per_period=amount_str(d["budgetPerPeriod"] or 0),
            period_duration=as_int(d["periodDuration"]) or 0,
            per_tx_limit=amount_str(d["perTxLimit"] or 0),
            daily_limit=amount_str(d["dailyLimit"] or 0),
            approval_threshold=amount_str(d["approvalThreshold"] or 0),
            period_spent=amount_str(d["periodSpent"] or 0),
            period_reserved=amount_str(d["periodReserved"] or 0),
            daily_spent=amount_str(d["dailySpent"] or 0),
            daily_reserved=amount_str(d["dailyReserved"] or 0),
            period_start=from_unix(d["periodStart"]),
            daily_reset_at=from_unix(d["lastDayTimestamp"]),
            status=status,
            allowed_chains=sorted(int(c) for c in (d["allowedChains"] or [])),
            auto_topup_min_balance=_optional_amount(d["minBalance"]),
            auto_topup_target_balance=_optional_amount(d["targetBalance"]),
        )


@dataclass(slots=True)
class RequestSnapshot:
    request_id: int
    account_id: int
    requester_address: str
    amount: str
    chain_id: int
    destination_address: str
    description: str
    created_at: Optional[dt.datetime]
    approved: bool
    rejected: bool
    executed: bool
    rail_transfer_id: str

    @classmethod
    def from_chain(cls, request_id: int, raw: Any) -> "RequestSnapshot":
        d = _named(raw, REQUEST_FIELDS)
        return cls(
            request_id=int(request_id),
            account_id=as_int(d["accountId"]) or 0,
            requester_address=lower_address(d["requester"]),
            amount=amount_str(d["amount"] or 0),
            chain_id=as_int(d["chainId"]) or 0,
            destination_address=lower_address(d["destinationAddress"]),
            description=str(d["description"] or ""),
            created_at=from_unix(d["createdAt"]),
            approved=bool(d["approved"]),
            rejected=bool(d["rejected"]),
            executed=bool(d["executed"]),
            rail_transfer_id=str(d["gatewayTxId"] or ""),
        )


@dataclass(slots=True)
class WriteResult:
    """Outcome of an identifier-producing write; id 0 means the event was missing."""
    tx_hash: str
    new_id: int = 0


# ──────────────────────────────────────────────────────────────
# Settlement rail payloads
# ──────────────────────────────────────────────────────────────

@dataclass(slots=True)
class TransferSpec:
    version: int
    source_domain: int
    destination_domain: int
    source_contract: str
    destination_contract: str
    source_token: str
    destination_token: str
    source_depositor: str
    destination_recipient: str
    source_signer: str
    destination_caller: str
    value: int
    salt: str
    hook_data: str = "0x"

    def to_message(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "sourceDomain": self.source_domain,
            "destinationDomain": self.destination_domain,
            "sourceContract": self.source_contract,
            "destinationContract": self.destination_contract,
            "sourceToken": self.source_token,
            "destinationToken": self.destination_token,
            "sourceDepositor": self.source_depositor,
            "destinationRecipient": self.destination_recipient,
            "sourceSigner": self.source_signer,
            "destinationCaller": self.destination_caller,
            "value": int(self.value),
            "salt": self.salt,
            "hookData": self.hook_data,
        }


@dataclass(slots=True)
class BurnIntent:
    max_block_height: int
    max_fee: int
    spec: TransferSpec

    def to_message(self) -> Dict[str, Any]:
        return {
            "maxBlockHeight": int(self.max_block_height),
            "maxFee": int(self.max_fee),
            "spec": self.spec.to_message(),
        }

    def to_wire(self) -> Dict[str, Any]:
        """JSON body shape: big integers as decimal strings."""
        spec = self.spec.to_message()
        spec["value"] = str(spec["value"])
        return {
            "maxBlockHeight": str(self.max_block_height),
            "maxFee": str(self.max_fee),
            "spec": spec,
        }


@dataclass(slots=True)
class SignedBurnIntent:
    burn_intent: BurnIntent
    signature: str

    def to_wire(self) -> Dict[str, Any]:
        return {"burnIntent": self.burn_intent.to_wire(), "signature": self.signature}


@dataclass(slots=True)
class Attestation:
    attestation: str
    signature: str
    transfer_id: str = ""
