"""Chain snapshot -> mirror field mapping, shared by every refresh path."""
from __future__ import annotations

import datetime as dt
from typing import Any, Dict, Optional

from .models import AccountSnapshot, RequestSnapshot, SpendRequested, SpendStatus
from .utils import lower_address, utcnow

# Counters the contract keeps moving; a closed mirror row keeps its last values.
COUNTER_FIELDS = (
    "period_spent",
    "period_reserved",
    "daily_spent",
    "daily_reserved",
    "period_start",
    "daily_reset_at",
)

REJECTED_ON_CHAIN = "Rejected on-chain"


def account_fields(snapshot: AccountSnapshot, existing: Optional[Any] = None) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        "owner_address": snapshot.owner_address,
        "approver_address": snapshot.approver_address,
        "label": snapshot.label,
        "budget_per_period": snapshot.budget_per_period,
        "period_duration": snapshot.period_duration,
        "per_tx_limit": snapshot.per_tx_limit,
        "daily_limit": snapshot.daily_limit,
        "approval_threshold": snapshot.approval_threshold,
        "period_spent": snapshot.period_spent,
        "period_reserved": snapshot.period_reserved,
        "daily_spent": snapshot.daily_spent,
        "daily_reserved": snapshot.daily_reserved,
        "period_start": snapshot.period_start,
        "daily_reset_at": snapshot.daily_reset_at,
        "frozen": snapshot.frozen,
        "closed": snapshot.closed,
        "allowed_chains": ",".join(str(c) for c in snapshot.allowed_chains),
        "auto_topup_min_balance": snapshot.auto_topup_min_balance,
        "auto_topup_target_balance": snapshot.auto_topup_target_balance,
    }
    if existing is not None and getattr(existing, "closed", False):
        for name in COUNTER_FIELDS:
            fields.pop(name, None)
    return fields


def request_fields_from_event(event: SpendRequested) -> Dict[str, Any]:
    return {
        "request_id": int(event.request_id),
        "account_id": int(event.account_id),
        "requester_address": lower_address(event.requester_address),
        "amount": str(event.amount),
        "chain_id": int(event.chain_id),
        "destination_address": lower_address(event.destination_address),
        "description": event.description or "",
        "status": SpendStatus.PENDING_APPROVAL.value,
        "requested_at": event.timestamp,
        "tx_hash": event.tx_hash,
    }


def request_fields_from_chain(snapshot: RequestSnapshot, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
    """Corrections implied by on-chain request state; empty when still pending.

    The treasury does not record the destination mint hash, so it is never part
    of a correction; whatever the orchestrator already saved is left in place.
    """
    if snapshot.executed:
        fields: Dict[str, Any] = {
            "status": SpendStatus.EXECUTED,
            "executed_at": now or utcnow(),
        }
        if snapshot.rail_transfer_id:
            fields["rail_transfer_id"] = snapshot.rail_transfer_id
        return fields
    if snapshot.rejected:
        return {"status": SpendStatus.FAILED, "failure_reason": REJECTED_ON_CHAIN}
    return {}
