"""Tests for the spend-account mirror."""
from __future__ import annotations

import datetime as dt

import pytest

from spend_settlement import models as m
from spend_settlement.accounts import AccountMirror
from spend_settlement.models import AccountSnapshot, AccountStatus, AlertSeverity, AlertType

OWNER = "0x" + "a" * 40
APPROVER = "0x" + "b" * 40
T0 = dt.datetime(2025, 3, 1, 0, 0, 0)


def _snapshot(account_id: int, *, status=AccountStatus.ACTIVE, spent="100") -> AccountSnapshot:
    return AccountSnapshot(
        account_id=account_id, owner_address=OWNER, approver_address=APPROVER,
        label=f"acct-{account_id}", budget_per_period="1000000", period_duration=86400,
        per_tx_limit="500000", daily_limit="700000", approval_threshold="250000",
        period_spent=spent, period_reserved="0", daily_spent=spent, daily_reserved="0",
        period_start=T0, daily_reset_at=T0, status=status, allowed_chains=[84532, 43113],
    )


class _FakeGateway:
    def __init__(self, snapshots: dict, next_id: int = 1) -> None:
        self.snapshots = snapshots
        self.next_id = next_id
        self.writes: list[tuple] = []

    async def get_account(self, account_id):
        snap = self.snapshots.get(account_id)
        if isinstance(snap, BaseException):
            raise snap
        if snap is None:
            raise ConnectionError(f"account {account_id} unreadable")
        return snap

    async def get_next_account_id(self):
        return self.next_id

    async def freeze_account(self, account_id):
        self.writes.append(("freeze", account_id))
        return "0xfreeze"

    async def update_allowed_chains(self, account_id, chains):
        self.writes.append(("chains", account_id, chains))
        return "0xchains"

    async def create_spend_account(self, *args):
        self.writes.append(("create",) + args)
        return m.WriteResult(tx_hash="0xcreate", new_id=5)


class _RecordingSink:
    def __init__(self, fail: bool = False) -> None:
        self.alerts: list[tuple] = []
        self.fail = fail

    async def create_alert(self, alert_type, message, severity, related_account_id=None, metadata=None):
        if self.fail:
            raise RuntimeError("alert store down")
        self.alerts.append((alert_type, message, severity, related_account_id))


def _event(kind: str, account_id: int) -> m.AccountEvent:
    return m.AccountEvent(kind=kind, account_id=account_id, block_number=10, tx_hash="0xev", timestamp=T0)


# ──────────────────────────────────────────────────────────────
# Sync
# ──────────────────────────────────────────────────────────────


class TestSync:
    def test_sync_account_writes_row(self, with_store) -> None:
        async def scenario(store):
            mirror = AccountMirror(store, _FakeGateway({3: _snapshot(3)}))
            await mirror.sync_account(3)
            return await store.get_account(3)

        row = with_store(scenario)
        assert row.owner_address == OWNER
        assert row.budget_per_period == "1000000"
        assert row.chain_ids == [43113, 84532]
        assert not row.frozen and not row.closed

    def test_sync_all_counts(self, with_store) -> None:
        async def scenario(store):
            gw = _FakeGateway({1: _snapshot(1), 3: _snapshot(3)}, next_id=4)
            mirror = AccountMirror(store, gw)
            return await mirror.sync_all(), await mirror.list_accounts()

        summary, rows = with_store(scenario)
        assert summary == {"synced": 2, "failed": 1, "total": 3}
        assert [r.account_id for r in rows] == [1, 3]

    def test_sync_all_empty_contract(self, with_store) -> None:
        async def scenario(store):
            return await AccountMirror(store, _FakeGateway({}, next_id=1)).sync_all()

        assert with_store(scenario) == {"synced": 0, "failed": 0, "total": 0}

    def test_closed_row_keeps_counters(self, with_store) -> None:
        async def scenario(store):
            gw = _FakeGateway({2: _snapshot(2, status=AccountStatus.CLOSED, spent="100")})
            mirror = AccountMirror(store, gw)
            await mirror.sync_account(2)
            gw.snapshots[2] = _snapshot(2, status=AccountStatus.CLOSED, spent="0")
            await mirror.sync_account(2)
            return await store.get_account(2)

        row = with_store(scenario)
        assert row.closed
        assert row.period_spent == "100"
        assert row.daily_spent == "100"

    def test_owner_and_approver_lookups(self, with_store) -> None:
        async def scenario(store):
            mirror = AccountMirror(store, _FakeGateway({1: _snapshot(1)}))
            await mirror.sync_account(1)
            return (
                await mirror.list_by_owner(OWNER.upper().replace("0X", "0x")),
                await mirror.list_by_approver(APPROVER),
                await mirror.list_by_owner("0x" + "c" * 40),
            )

        by_owner, by_approver, none = with_store(scenario)
        assert [r.account_id for r in by_owner] == [1]
        assert [r.account_id for r in by_approver] == [1]
        assert none == []


# ──────────────────────────────────────────────────────────────
# Account events
# ──────────────────────────────────────────────────────────────


class TestAccountEvents:
    def test_frozen_raises_warning_alert(self, with_store) -> None:
        sink = _RecordingSink()

        async def scenario(store):
            gw = _FakeGateway({4: _snapshot(4, status=AccountStatus.FROZEN)})
            return await AccountMirror(store, gw, sink).on_account_event(_event(m.ACCOUNT_FROZEN, 4))

        row = with_store(scenario)
        assert row.frozen
        assert sink.alerts == [
            (AlertType.ACCOUNT_FROZEN, "Spend account 4 has been frozen", AlertSeverity.WARNING, 4),
        ]

    def test_closed_raises_info_alert(self, with_store) -> None:
        sink = _RecordingSink()

        async def scenario(store):
            gw = _FakeGateway({4: _snapshot(4, status=AccountStatus.CLOSED)})
            await AccountMirror(store, gw, sink).on_account_event(_event(m.ACCOUNT_CLOSED, 4))

        with_store(scenario)
        assert sink.alerts == [
            (AlertType.ACCOUNT_CLOSED, "Spend account 4 has been closed", AlertSeverity.INFO, 4),
        ]

    def test_created_event_has_no_alert(self, with_store) -> None:
        sink = _RecordingSink()

        async def scenario(store):
            gw = _FakeGateway({6: _snapshot(6)})
            return await AccountMirror(store, gw, sink).on_account_event(_event(m.ACCOUNT_CREATED, 6))

        row = with_store(scenario)
        assert row.account_id == 6
        assert sink.alerts == []

    def test_alert_sink_failure_is_swallowed(self, with_store) -> None:
        async def scenario(store):
            gw = _FakeGateway({4: _snapshot(4, status=AccountStatus.FROZEN)})
            mirror = AccountMirror(store, gw, _RecordingSink(fail=True))
            return await mirror.on_account_event(_event(m.ACCOUNT_FROZEN, 4))

        assert with_store(scenario).frozen

    def test_unreadable_chain_falls_back_to_event_flags(self, with_store) -> None:
        async def scenario(store):
            gw = _FakeGateway({5: _snapshot(5)})
            mirror = AccountMirror(store, gw, _RecordingSink())
            await mirror.sync_account(5)
            gw.snapshots[5] = ConnectionError("rpc down")
            return await mirror.on_account_event(_event(m.ACCOUNT_FROZEN, 5))

        row = with_store(scenario)
        assert row.frozen
        assert row.budget_per_period == "1000000"

    def test_unreadable_chain_without_row_propagates(self, with_store) -> None:
        async def scenario(store):
            mirror = AccountMirror(store, _FakeGateway({}), _RecordingSink())
            with pytest.raises(ConnectionError):
                await mirror.on_account_event(_event(m.ACCOUNT_FROZEN, 9))
            return await store.get_account(9)

        assert with_store(scenario) is None


# ──────────────────────────────────────────────────────────────
# Admin pass-throughs
# ──────────────────────────────────────────────────────────────


class TestAdminWrites:
    def test_pass_through(self, with_store) -> None:
        gw = _FakeGateway({})

        async def scenario(store):
            mirror = AccountMirror(store, gw)
            return (
                await mirror.freeze_account(2),
                await mirror.update_allowed_chains(2, (84532,)),
                await mirror.create_account(OWNER, "Ops", "1", 86400, "1", "1", "1", APPROVER, [84532]),
            )

        freeze_tx, chains_tx, created = with_store(scenario)
        assert (freeze_tx, chains_tx) == ("0xfreeze", "0xchains")
        assert created.new_id == 5
        assert gw.writes[0] == ("freeze", 2)
        assert gw.writes[1] == ("chains", 2, [84532])
