"""Tests for treasury-wide event handling and alerts."""
from __future__ import annotations

import asyncio
import datetime as dt
import logging

from spend_settlement import models as m
from spend_settlement.alerts import LoggingAlertSink, raise_alert
from spend_settlement.event_bus import EventBus
from spend_settlement.models import AlertSeverity, AlertType
from spend_settlement.treasury_watch import TreasuryWatcher

T0 = dt.datetime(2025, 6, 1, 9, 30, 0)
OLD_ADMIN = "0x" + "1" * 40
NEW_ADMIN = "0x" + "2" * 40


class _RecordingSink:
    def __init__(self) -> None:
        self.alerts: list[dict] = []

    def create_alert(self, alert_type, message, severity, related_account_id=None, metadata=None):
        self.alerts.append({
            "type": alert_type, "message": message, "severity": severity,
            "account": related_account_id, "metadata": metadata,
        })


class _FakeGateway:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def record_inbound_funding(self, amount, rail_tx_id):
        self.calls.append(("fund", amount, rail_tx_id))
        return "0xfund"

    async def pause(self):
        self.calls.append(("pause",))
        return "0xpause"

    async def transfer_admin(self, new_admin):
        self.calls.append(("transfer_admin", new_admin))
        return "0xadmin"


class TestAlerts:
    def test_admin_transferred_is_critical(self) -> None:
        sink = _RecordingSink()
        watcher = TreasuryWatcher(_FakeGateway(), sink)
        event = m.AdminTransferred(OLD_ADMIN, NEW_ADMIN, 10, "0xabc", T0)

        asyncio.run(watcher.on_admin_transferred(event))

        [alert] = sink.alerts
        assert alert["type"] is AlertType.ADMIN_TRANSFERRED
        assert alert["severity"] is AlertSeverity.CRITICAL
        assert alert["message"] == f"Treasury admin transferred from {OLD_ADMIN} to {NEW_ADMIN}"
        assert alert["metadata"] == {"previousAdmin": OLD_ADMIN, "newAdmin": NEW_ADMIN, "txHash": "0xabc"}

    def test_paused_is_critical(self) -> None:
        sink = _RecordingSink()
        watcher = TreasuryWatcher(_FakeGateway(), sink)

        asyncio.run(watcher.on_pause_changed(m.ContractPauseChanged(True, 11, "0xp", T0)))

        [alert] = sink.alerts
        assert alert["type"] is AlertType.CONTRACT_PAUSED
        assert alert["severity"] is AlertSeverity.CRITICAL
        assert "all operations are disabled" in alert["message"]
        assert alert["metadata"] == {"txHash": "0xp", "pausedAt": "2025-06-01T09:30:00"}
        assert watcher.paused is True

    def test_unpaused_only_logs(self) -> None:
        sink = _RecordingSink()
        watcher = TreasuryWatcher(_FakeGateway(), sink)
        asyncio.run(watcher.on_pause_changed(m.ContractPauseChanged(False, 12, "0xu", T0)))
        assert sink.alerts == []
        assert watcher.paused is False

    def test_inbound_funding_only_logs(self) -> None:
        sink = _RecordingSink()
        watcher = TreasuryWatcher(_FakeGateway(), sink)
        asyncio.run(watcher.on_inbound_funding(m.InboundFunding("5000", "rail-1", 13, "0xf", T0)))
        assert sink.alerts == []

    def test_bus_routing(self) -> None:
        sink = _RecordingSink()
        watcher = TreasuryWatcher(_FakeGateway(), sink)
        bus = EventBus()
        watcher.subscribe(bus)

        async def scenario():
            bus.publish(m.CONTRACT_PAUSED, m.ContractPauseChanged(True, 1, "0x1", T0))
            bus.publish(m.ADMIN_TRANSFERRED, m.AdminTransferred(OLD_ADMIN, NEW_ADMIN, 2, "0x2", T0))
            await bus.drain()

        asyncio.run(scenario())
        assert [a["type"] for a in sink.alerts] == [AlertType.CONTRACT_PAUSED, AlertType.ADMIN_TRANSFERRED]


class TestAdminWrites:
    def test_pass_through(self) -> None:
        gw = _FakeGateway()
        watcher = TreasuryWatcher(gw, _RecordingSink())

        async def scenario():
            return (
                await watcher.fund_treasury("5000", "rail-1"),
                await watcher.pause(),
                await watcher.transfer_admin(NEW_ADMIN),
            )

        assert asyncio.run(scenario()) == ("0xfund", "0xpause", "0xadmin")
        assert gw.calls == [("fund", "5000", "rail-1"), ("pause",), ("transfer_admin", NEW_ADMIN)]


class TestLoggingSink:
    def test_level_follows_severity(self, caplog) -> None:
        caplog.set_level(logging.INFO, logger="spend_settlement.alert")
        sink = LoggingAlertSink()
        sink.create_alert(AlertType.ACCOUNT_CLOSED, "closed", AlertSeverity.INFO, 3)
        sink.create_alert(AlertType.CONTRACT_PAUSED, "paused", AlertSeverity.CRITICAL, metadata={"b": 1, "a": 2})

        info, critical = caplog.records
        assert info.levelno == logging.INFO
        assert "account=3" in info.getMessage()
        assert critical.levelno == logging.CRITICAL
        assert 'metadata={"a": 2, "b": 1}' in critical.getMessage()

    def test_raise_alert_reports_failure(self) -> None:
        class _Broken:
            def create_alert(self, *args, **kwargs):
                raise RuntimeError("down")

        ok = asyncio.run(raise_alert(_Broken(), AlertType.ACCOUNT_FROZEN, "x", AlertSeverity.WARNING))
        assert ok is False
