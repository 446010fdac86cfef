"""Tests for the stuck-request sweeper."""
from __future__ import annotations

import datetime as dt

from spend_settlement.job_queue import JobQueue
from spend_settlement.lifecycle import EXECUTE_SPEND_JOB, settlement_job_key
from spend_settlement.models import RequestSnapshot, SpendStatus
from spend_settlement.sweeper import StuckRequestSweeper

NOW = dt.datetime(2025, 5, 10, 12, 0, 0)


def _snapshot(request_id: int, *, executed=False, rejected=False, rail_id="") -> RequestSnapshot:
    return RequestSnapshot(
        request_id=request_id, account_id=1, requester_address="0x" + "1" * 40,
        amount="1000", chain_id=84532, destination_address="0x" + "2" * 40,
        description="", created_at=None, approved=True, rejected=rejected,
        executed=executed, rail_transfer_id=rail_id,
    )


class _FakeGateway:
    def __init__(self, snapshots: dict[int, RequestSnapshot]) -> None:
        self.snapshots = snapshots
        self.marked_failed: list[tuple[int, str]] = []

    async def get_request(self, request_id):
        return self.snapshots[request_id]

    async def mark_spend_failed(self, request_id, reason):
        self.marked_failed.append((request_id, reason))
        return "0xfail"


async def _stuck(store, request_id: int, *, age: dt.timedelta, idle: dt.timedelta) -> None:
    await store.insert_request({
        "request_id": request_id, "account_id": 1,
        "requester_address": "0x" + "1" * 40, "amount": "1000", "chain_id": 84532,
        "destination_address": "0x" + "2" * 40, "description": "",
        "status": SpendStatus.EXECUTING.value,
    })
    await store.update_request(request_id, created_at=NOW - age, updated_at=NOW - idle)


def _sweeper(store, gateway, queue=None) -> StuckRequestSweeper:
    return StuckRequestSweeper(store, gateway, queue or JobQueue(store, clock=lambda: NOW), clock=lambda: NOW)


class TestChainCorrections:
    def test_executed_on_chain(self, with_store) -> None:
        async def scenario(store):
            await _stuck(store, 1, age=dt.timedelta(hours=1), idle=dt.timedelta(minutes=15))
            gw = _FakeGateway({1: _snapshot(1, executed=True, rail_id="rail-9")})
            summary = await _sweeper(store, gw).sweep_once()
            return summary, await store.get_request(1)

        summary, row = with_store(scenario)
        assert summary["found"] == 1
        assert summary["executed"] == 1
        assert row.status == SpendStatus.EXECUTED.value
        assert row.rail_transfer_id == "rail-9"
        assert row.executed_at == NOW

    def test_executed_on_chain_keeps_saved_settlement_hashes(self, with_store) -> None:
        async def scenario(store):
            await _stuck(store, 4, age=dt.timedelta(hours=1), idle=dt.timedelta(minutes=15))
            await store.update_request(
                4,
                rail_transfer_id="rail-4",
                destination_mint_tx_hash="0xmint",
                source_settlement_tx_hash="0xsettle",
                updated_at=NOW - dt.timedelta(minutes=15),
            )
            gw = _FakeGateway({4: _snapshot(4, executed=True)})
            await _sweeper(store, gw).sweep_once()
            return await store.get_request(4)

        row = with_store(scenario)
        assert row.status == SpendStatus.EXECUTED.value
        assert row.rail_transfer_id == "rail-4"
        assert row.destination_mint_tx_hash == "0xmint"
        assert row.source_settlement_tx_hash == "0xsettle"

    def test_rejected_on_chain(self, with_store) -> None:
        async def scenario(store):
            await _stuck(store, 2, age=dt.timedelta(hours=1), idle=dt.timedelta(minutes=15))
            gw = _FakeGateway({2: _snapshot(2, rejected=True)})
            await _sweeper(store, gw).sweep_once()
            return await store.get_request(2)

        row = with_store(scenario)
        assert row.status == SpendStatus.FAILED.value
        assert row.failure_reason == "Rejected on-chain"

    def test_recently_updated_is_left_alone(self, with_store) -> None:
        async def scenario(store):
            await _stuck(store, 3, age=dt.timedelta(hours=1), idle=dt.timedelta(minutes=5))
            gw = _FakeGateway({})
            return await _sweeper(store, gw).sweep_once(), await store.get_request(3)

        summary, row = with_store(scenario)
        assert summary["found"] == 0
        assert row.status == SpendStatus.EXECUTING.value


class TestHardTimeout:
    def test_25_hour_old_request_forced_failed(self, with_store) -> None:
        async def scenario(store):
            await _stuck(store, 4, age=dt.timedelta(hours=25), idle=dt.timedelta(minutes=30))
            gw = _FakeGateway({4: _snapshot(4)})
            summary = await _sweeper(store, gw).sweep_once()
            return summary, await store.get_request(4), gw

        summary, row, gw = with_store(scenario)
        assert summary["timed_out"] == 1
        assert row.status == SpendStatus.FAILED.value
        assert "timeout" in row.failure_reason.lower()
        assert gw.marked_failed == [(4, "Execution timeout")]


class TestReexecution:
    def test_pending_request_is_retried_through_queue(self, with_store) -> None:
        seen = []

        async def scenario(store):
            await _stuck(store, 5, age=dt.timedelta(hours=2), idle=dt.timedelta(minutes=20))
            queue = JobQueue(store, clock=lambda: NOW)

            async def handler(payload):
                seen.append(payload)
                await store.update_request(payload["requestId"], status=SpendStatus.EXECUTED)

            queue.register(EXECUTE_SPEND_JOB, handler)
            gw = _FakeGateway({5: _snapshot(5)})
            summary = await _sweeper(store, gw, queue).sweep_once()
            return summary, await store.get_request(5)

        summary, row = with_store(scenario)
        assert seen == [{"requestId": 5}]
        assert summary["retried"] == 1
        assert row.status == SpendStatus.EXECUTED.value

    def test_queued_job_is_not_overlapped(self, with_store) -> None:
        seen = []

        async def scenario(store):
            await _stuck(store, 6, age=dt.timedelta(hours=2), idle=dt.timedelta(minutes=20))
            queue = JobQueue(store, clock=lambda: NOW)

            async def handler(payload):
                seen.append(payload)

            queue.register(EXECUTE_SPEND_JOB, handler)
            await queue.enqueue(EXECUTE_SPEND_JOB, {"requestId": 6}, dedupe_key=settlement_job_key(6))
            gw = _FakeGateway({6: _snapshot(6)})
            return await _sweeper(store, gw, queue).sweep_once()

        summary = with_store(scenario)
        assert seen == []
        assert summary["skipped"] == 1

    def test_failure_escalates_after_an_hour_idle(self, with_store) -> None:
        async def scenario(store):
            await _stuck(store, 7, age=dt.timedelta(hours=3), idle=dt.timedelta(minutes=90))
            queue = JobQueue(store, clock=lambda: NOW)

            async def handler(payload):
                raise ConnectionError("rail unreachable")

            queue.register(EXECUTE_SPEND_JOB, handler)
            gw = _FakeGateway({7: _snapshot(7)})
            summary = await _sweeper(store, gw, queue).sweep_once()
            return summary, await store.get_request(7)

        summary, row = with_store(scenario)
        assert summary["escalated"] == 1
        assert row.status == SpendStatus.FAILED.value
        assert row.failure_reason == "Recovery failed: rail unreachable"

    def test_failure_within_escalation_window_waits(self, with_store) -> None:
        async def scenario(store):
            await _stuck(store, 8, age=dt.timedelta(hours=3), idle=dt.timedelta(minutes=20))
            queue = JobQueue(store, clock=lambda: NOW)

            async def handler(payload):
                raise ConnectionError("rail unreachable")

            queue.register(EXECUTE_SPEND_JOB, handler)
            gw = _FakeGateway({8: _snapshot(8)})
            summary = await _sweeper(store, gw, queue).sweep_once()
            return summary, await store.get_request(8)

        summary, row = with_store(scenario)
        assert summary["errors"] == 1
        assert row.status == SpendStatus.EXECUTING.value
