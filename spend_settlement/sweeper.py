"""Stuck-request sweeper.

Every ``interval`` seconds, requests that have sat in EXECUTING longer than
``stuck_threshold`` are checked against the treasury contract:

  executed on chain         -> EXECUTED
  rejected on chain         -> FAILED ("Rejected on-chain")
  older than hard_timeout   -> FAILED here and on chain
  otherwise                 -> re-run settlement; if that fails and the row
                               has not moved for ``escalation``, FAILED
"""
from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections.abc import Callable
from typing import Dict

from .chain_gateway import TreasuryGateway
from .errors import JobAlreadyActiveError
from .job_queue import JobQueue
from .lifecycle import EXECUTE_SPEND_JOB, settlement_job_key
from .models import SpendStatus
from .reconcile import request_fields_from_chain
from .store import MirrorStore, SpendRequestRow
from .utils import truncate, utcnow

log = logging.getLogger(__name__)

TIMEOUT_REASON = "Execution timeout - stuck for over 24 hours"
TIMEOUT_CHAIN_REASON = "Execution timeout"


class StuckRequestSweeper:
    def __init__(
        self,
        store: MirrorStore,
        gateway: TreasuryGateway,
        queue: JobQueue,
        *,
        interval: float = 300.0,
        stuck_threshold: float = 600.0,
        hard_timeout: float = 86400.0,
        escalation: float = 3600.0,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.queue = queue
        self.interval = max(1.0, float(interval))
        self.stuck_threshold = dt.timedelta(seconds=stuck_threshold)
        self.hard_timeout = dt.timedelta(seconds=hard_timeout)
        self.escalation = dt.timedelta(seconds=escalation)
        self.clock = clock
        self._running = False
        self.cycles = 0

    async def run(self) -> None:
        self._running = True
        log.info("sweeper started (every %.0fs, stuck after %s)", self.interval, self.stuck_threshold)
        while self._running:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("sweep cycle failed")

    def stop(self) -> None:
        self._running = False

    async def sweep_once(self) -> Dict[str, int]:
        self.cycles += 1
        summary = {"found": 0, "executed": 0, "rejected": 0, "timed_out": 0,
                   "retried": 0, "skipped": 0, "errors": 0, "escalated": 0}
        cutoff = self.clock() - self.stuck_threshold
        stuck = await self.store.find_stale(SpendStatus.EXECUTING, cutoff)
        summary["found"] = len(stuck)
        if not stuck:
            log.debug("no stuck spends")
            return summary

        log.info("found %d stuck spend(s), attempting recovery", len(stuck))
        for row in stuck:
            outcome = await self._recover(row)
            summary[outcome] += 1
        log.info("sweep done: %s", summary)
        return summary

    async def _recover(self, row: SpendRequestRow) -> str:
        request_id = row.request_id
        try:
            log.info("recovering stuck spend %d", request_id)
            snapshot = await self.gateway.get_request(request_id)
            corrections = request_fields_from_chain(snapshot, now=self.clock())
            if corrections:
                await self.store.update_request(request_id, from_statuses=(SpendStatus.EXECUTING,), **corrections)
                if snapshot.executed:
                    log.info("spend %d already executed on chain, mirror corrected", request_id)
                    return "executed"
                log.info("spend %d was rejected on chain, marked failed", request_id)
                return "rejected"

            now = self.clock()
            if row.created_at is not None and now - row.created_at > self.hard_timeout:
                log.warning("spend %d stuck for more than %s, marking failed", request_id, self.hard_timeout)
                await self.store.update_request(
                    request_id,
                    from_statuses=(SpendStatus.EXECUTING,),
                    status=SpendStatus.FAILED,
                    failure_reason=TIMEOUT_REASON,
                )
                try:
                    await self.gateway.mark_spend_failed(request_id, TIMEOUT_CHAIN_REASON)
                except Exception as exc:
                    log.error("spend %d: mark failed on treasury failed: %s", request_id, exc)
                return "timed_out"

            log.info("retrying execution for spend %d", request_id)
            await self.queue.run_exclusive(
                EXECUTE_SPEND_JOB, {"requestId": int(request_id)}, settlement_job_key(request_id)
            )
            return "retried"
        except asyncio.CancelledError:
            raise
        except JobAlreadyActiveError:
            log.info("spend %d already has a settlement job in flight, skipping", request_id)
            return "skipped"
        except Exception as exc:
            log.error("failed to recover stuck spend %d: %s", request_id, exc)
            if self.clock() - row.updated_at > self.escalation:
                await self.store.update_request(
                    request_id,
                    from_statuses=(SpendStatus.EXECUTING, SpendStatus.FAILED),
                    status=SpendStatus.FAILED,
                    failure_reason=truncate(f"Recovery failed: {exc}", 256),
                )
                log.warning("spend %d escalated to FAILED after %s without progress", request_id, self.escalation)
                return "escalated"
            return "errors"
