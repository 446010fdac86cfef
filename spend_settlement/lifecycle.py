"""Request lifecycle: applies spend events to the mirror and queues settlement."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Dict, List, Optional

from . import models as m
from .chain_gateway import TreasuryGateway
from .event_bus import EventBus
from .job_queue import JobQueue
from .models import SpendStatus, WriteResult
from .reconcile import request_fields_from_event
from .store import MirrorStore, SpendRequestRow

log = logging.getLogger(__name__)

EXECUTE_SPEND_JOB = "execute-spend"

# Statuses an approval may still move to APPROVED.
APPROVABLE = (SpendStatus.PENDING_APPROVAL, SpendStatus.APPROVED)
NOT_EXECUTED = tuple(s for s in SpendStatus if s is not SpendStatus.EXECUTED)


def settlement_job_key(request_id: int) -> str:
    return f"spend:{int(request_id)}"


class RequestLifecycle:
    def __init__(
        self,
        store: MirrorStore,
        queue: JobQueue,
        gateway: TreasuryGateway,
        *,
        poll_attempts: int = 10,
        poll_interval: float = 0.1,
        job_max_attempts: int = 3,
        job_backoff_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.queue = queue
        self.gateway = gateway
        self.poll_attempts = max(0, int(poll_attempts))
        self.poll_interval = float(poll_interval)
        self.job_max_attempts = int(job_max_attempts)
        self.job_backoff_seconds = float(job_backoff_seconds)
        self.sleep = sleep

        self.orphaned_approvals = 0

    def subscribe(self, bus: EventBus) -> None:
        bus.subscribe(m.SPEND_REQUESTED, self.on_requested)
        bus.subscribe(m.SPEND_APPROVED, self.on_approved)
        bus.subscribe(m.SPEND_REJECTED, self.on_rejected)
        bus.subscribe(m.SPEND_EXECUTED, self.on_executed)
        bus.subscribe(m.SPEND_FAILED, self.on_failed)

    # ── event handlers ──

    async def on_requested(self, event: m.SpendRequested) -> bool:
        log.info("spend requested: request=%d account=%d", event.request_id, event.account_id)
        if await self.store.get_request(event.request_id) is not None:
            log.info("spend request %d already mirrored, skipping", event.request_id)
            return False
        inserted = await self.store.insert_request(request_fields_from_event(event))
        if not inserted:
            log.info("spend request %d inserted concurrently, skipping", event.request_id)
        return inserted

    async def _wait_for_request(self, request_id: int) -> Optional[SpendRequestRow]:
        row = await self.store.get_request(request_id)
        attempt = 0
        while row is None and attempt < self.poll_attempts:
            attempt += 1
            log.debug("waiting for spend request %d (%d/%d)", request_id, attempt, self.poll_attempts)
            await self.sleep(self.poll_interval)
            row = await self.store.get_request(request_id)
        return row

    async def on_approved(self, event: m.SpendApproved) -> bool:
        """APPROVED + queue settlement. Returns whether a job was queued."""
        log.info("spend approved: request=%d account=%d", event.request_id, event.account_id)
        row = await self._wait_for_request(event.request_id)
        if row is None:
            self.orphaned_approvals += 1
            log.error("spend request %d not mirrored after %d polls, dropping approval tx=%s",
                      event.request_id, self.poll_attempts, event.tx_hash)
            return False

        changed = await self.store.update_request(
            event.request_id,
            from_statuses=APPROVABLE,
            status=SpendStatus.APPROVED,
            approved_at=event.timestamp,
        )
        if not changed:
            log.info("spend request %d already %s, ignoring approval", event.request_id, row.status)
            return False

        queued = await self.queue.enqueue(
            EXECUTE_SPEND_JOB,
            {"requestId": int(event.request_id)},
            dedupe_key=settlement_job_key(event.request_id),
            max_attempts=self.job_max_attempts,
            backoff_seconds=self.job_backoff_seconds,
        )
        if queued:
            log.info("spend %d queued for execution", event.request_id)
        return queued

    async def on_rejected(self, event: m.SpendRejected) -> bool:
        log.info("spend rejected: request=%d reason=%s", event.request_id, event.reason)
        changed = await self.store.update_request(
            event.request_id,
            from_statuses=NOT_EXECUTED,
            status=SpendStatus.REJECTED,
            failure_reason=event.reason,
        )
        if not changed:
            log.warning("spend request %d not updated by rejection (missing or executed)", event.request_id)
        return changed

    async def on_executed(self, event: m.SpendExecuted) -> bool:
        log.info("spend executed on chain: request=%d rail_transfer_id=%s", event.request_id, event.rail_transfer_id)
        fields: Dict[str, Any] = {
            "executed_at": event.timestamp,
            "source_settlement_tx_hash": event.tx_hash,
        }
        # An empty id on the event never clears one saved by the orchestrator.
        if event.rail_transfer_id:
            fields["rail_transfer_id"] = event.rail_transfer_id
        changed = await self.store.update_request(event.request_id, status=SpendStatus.EXECUTED, **fields)
        if not changed:
            log.warning("spend request %d executed on chain but not mirrored", event.request_id)
        return changed

    async def on_failed(self, event: m.SpendFailed) -> bool:
        log.info("spend failed on chain: request=%d reason=%s", event.request_id, event.reason)
        changed = await self.store.update_request(
            event.request_id,
            from_statuses=NOT_EXECUTED,
            status=SpendStatus.FAILED,
            failure_reason=event.reason,
        )
        if not changed:
            log.warning("spend request %d not updated by failure event (missing or executed)", event.request_id)
        return changed

    # ── reads ──

    async def list_requests(
        self,
        account_id: Optional[int] = None,
        status: Optional[SpendStatus] = None,
        limit: int = 100,
    ) -> List[SpendRequestRow]:
        return await self.store.list_requests(account_id=account_id, status=status, limit=limit)

    async def get_request(self, request_id: int) -> Optional[SpendRequestRow]:
        return await self.store.get_request(request_id)

    async def list_by_account(self, account_id: int) -> List[SpendRequestRow]:
        return await self.store.list_requests(account_id=account_id, limit=10_000)

    # ── chain pass-throughs; the mirror changes when the event arrives ──

    async def submit_request(
        self,
        account_id: int,
        amount: str,
        chain_id: int,
        destination_address: str,
        description: str = "",
    ) -> WriteResult:
        log.info("submitting spend request: account=%d amount=%s chain=%d", account_id, amount, chain_id)
        result = await self.gateway.request_spend(account_id, amount, chain_id, destination_address, description)
        log.info("spend request submitted: request=%d tx=%s", result.new_id, result.tx_hash)
        return result

    async def approve_request(self, request_id: int) -> str:
        tx_hash = await self.gateway.approve_spend(request_id)
        log.info("spend request %d approved tx=%s", request_id, tx_hash)
        return tx_hash

    async def reject_request(self, request_id: int, reason: str) -> str:
        tx_hash = await self.gateway.reject_spend(request_id, reason)
        log.info("spend request %d rejected tx=%s", request_id, tx_hash)
        return tx_hash
