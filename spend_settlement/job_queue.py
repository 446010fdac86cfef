"""Table-backed job queue with per-key deduplication.

A job holds its dedupe key in ``active_key`` (a unique column) while it is
waiting or active, so at most one job per key can be in flight. Finishing
a job, successfully or not, releases the key.
"""
from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from .errors import (
    InvalidStatusError,
    JobAlreadyActiveError,
    RequestNotFoundError,
    UnsupportedChainError,
)
from .store import MirrorStore, SettlementJobRow
from .utils import truncate, utcnow

log = logging.getLogger(__name__)

JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

WAITING = "waiting"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"

# Retrying these cannot change the outcome.
NON_RETRYABLE = (InvalidStatusError, RequestNotFoundError, UnsupportedChainError)


def retry_delay(backoff_seconds: float, attempts: int) -> float:
    """Exponential job backoff: backoff * 2^(attempts-1)."""
    return float(backoff_seconds) * (2 ** max(0, int(attempts) - 1))


class JobQueue:
    def __init__(
        self,
        store: MirrorStore,
        *,
        poll_interval: float = 1.0,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self.store = store
        self.poll_interval = max(0.01, float(poll_interval))
        self.clock = clock
        self._handlers: Dict[str, JobHandler] = {}
        self._running = False

        self.completed = 0
        self.failed = 0
        self.retried = 0

    def register(self, job_name: str, handler: JobHandler) -> None:
        self._handlers[job_name] = handler

    # ── producers ──

    async def enqueue(
        self,
        job_name: str,
        payload: Dict[str, Any],
        *,
        dedupe_key: str,
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
    ) -> bool:
        """Add a job; False when a waiting/active job already holds *dedupe_key*."""
        now = self.clock()
        row = SettlementJobRow(
            job_name=job_name,
            payload=json.dumps(payload, separators=(",", ":")),
            dedupe_key=dedupe_key,
            active_key=dedupe_key,
            status=WAITING,
            attempts=0,
            max_attempts=max(1, int(max_attempts)),
            backoff_seconds=float(backoff_seconds),
            run_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.store.session() as s:
                s.add(row)
        except IntegrityError:
            log.info("job %s already queued for %s, skipping", job_name, dedupe_key)
            return False
        log.info("queued %s key=%s", job_name, dedupe_key)
        return True

    async def get_active(self, dedupe_key: str) -> Optional[SettlementJobRow]:
        async with self.store.session() as s:
            result = await s.execute(select(SettlementJobRow).where(SettlementJobRow.active_key == dedupe_key))
            return result.scalar_one_or_none()

    # ── consumers ──

    async def requeue_interrupted(self) -> int:
        """Jobs left ``active`` by a previous process go back to waiting."""
        now = self.clock()
        async with self.store.session() as s:
            result = await s.execute(
                update(SettlementJobRow)
                .where(SettlementJobRow.status == ACTIVE)
                .where(SettlementJobRow.job_name.in_(list(self._handlers)))
                .values(status=WAITING, run_at=now, updated_at=now)
            )
            count = int(result.rowcount or 0)
        if count:
            log.warning("requeued %d interrupted job(s)", count)
        return count

    async def _claim(self) -> Optional[SettlementJobRow]:
        now = self.clock()
        async with self.store.session() as s:
            candidate = (await s.execute(
                select(SettlementJobRow.id)
                .where(SettlementJobRow.status == WAITING)
                .where(SettlementJobRow.run_at <= now)
                .order_by(SettlementJobRow.run_at.asc(), SettlementJobRow.id.asc())
                .limit(1)
            )).scalar_one_or_none()
            if candidate is None:
                return None
            claimed = await s.execute(
                update(SettlementJobRow)
                .where(SettlementJobRow.id == candidate)
                .where(SettlementJobRow.status == WAITING)
                .values(status=ACTIVE, attempts=SettlementJobRow.attempts + 1, updated_at=now)
            )
            if not claimed.rowcount:
                return None
            return await s.get(SettlementJobRow, candidate, populate_existing=True)

    async def _complete(self, job_id: int) -> None:
        now = self.clock()
        async with self.store.session() as s:
            await s.execute(
                update(SettlementJobRow)
                .where(SettlementJobRow.id == job_id)
                .values(status=COMPLETED, active_key=None, last_error=None, updated_at=now)
            )

    async def _fail(self, job: SettlementJobRow, error: str, *, retry: bool) -> None:
        now = self.clock()
        values: Dict[str, Any] = {"last_error": truncate(error, 1000), "updated_at": now}
        if retry and job.attempts < job.max_attempts:
            delay = retry_delay(job.backoff_seconds, job.attempts)
            values.update(status=WAITING, run_at=now + dt.timedelta(seconds=delay))
            self.retried += 1
            log.warning("job %s key=%s attempt %d/%d failed: %s; retrying in %.1fs",
                        job.job_name, job.dedupe_key, job.attempts, job.max_attempts, error, delay)
        else:
            values.update(status=FAILED, active_key=None)
            self.failed += 1
            log.error("job %s key=%s failed permanently after %d attempt(s): %s",
                      job.job_name, job.dedupe_key, job.attempts, error)
        async with self.store.session() as s:
            await s.execute(update(SettlementJobRow).where(SettlementJobRow.id == job.id).values(**values))

    async def run_once(self) -> bool:
        """Claim and run one ready job. Returns False when nothing was ready."""
        job = await self._claim()
        if job is None:
            return False
        handler = self._handlers.get(job.job_name)
        if handler is None:
            await self._fail(job, f"no handler registered for {job.job_name}", retry=False)
            return True
        try:
            await handler(json.loads(job.payload or "{}"))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._fail(job, f"{type(exc).__name__}: {exc}", retry=not isinstance(exc, NON_RETRYABLE))
            return True
        await self._complete(job.id)
        self.completed += 1
        return True

    async def _worker(self, index: int) -> None:
        log.info("queue worker %d started", index)
        while self._running:
            try:
                ran = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("queue worker %d error", index)
                ran = False
            if not ran:
                await asyncio.sleep(self.poll_interval)

    async def run(self, workers: int = 1) -> None:
        """Poll and execute jobs until cancelled."""
        self._running = True
        await self.requeue_interrupted()
        tasks = [asyncio.create_task(self._worker(i), name=f"queue-worker-{i}") for i in range(max(1, workers))]
        try:
            await asyncio.gather(*tasks)
        finally:
            self._running = False
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    def stop(self) -> None:
        self._running = False

    async def run_exclusive(self, job_name: str, payload: Dict[str, Any], dedupe_key: str) -> Any:
        """Run the registered handler inline while holding *dedupe_key*.

        Raises JobAlreadyActiveError when a queued or running job holds the key.
        Failures are recorded and re-raised, never rescheduled.
        """
        handler = self._handlers.get(job_name)
        if handler is None:
            raise KeyError(job_name)
        now = self.clock()
        row = SettlementJobRow(
            job_name=job_name,
            payload=json.dumps(payload, separators=(",", ":")),
            dedupe_key=dedupe_key,
            active_key=dedupe_key,
            status=ACTIVE,
            attempts=1,
            max_attempts=1,
            backoff_seconds=0.0,
            run_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.store.session() as s:
                s.add(row)
        except IntegrityError as exc:
            raise JobAlreadyActiveError(dedupe_key) from exc

        try:
            result = await handler(payload)
        except Exception as exc:
            await self._fail(row, f"{type(exc).__name__}: {exc}", retry=False)
            raise
        await self._complete(row.id)
        self.completed += 1
        return result

    def snapshot(self) -> Dict[str, Any]:
        return {
            "handlers": sorted(self._handlers),
            "completed": self.completed,
            "failed": self.failed,
            "retried": self.retried,
        }
