"""Treasury-wide events (funding, admin, pause) and their admin writes."""
from __future__ import annotations

import logging
from typing import Optional

from . import models as m
from .alerts import AlertSink, LoggingAlertSink, raise_alert
from .chain_gateway import TreasuryGateway
from .event_bus import EventBus
from .models import AlertSeverity, AlertType

log = logging.getLogger(__name__)


class TreasuryWatcher:
    def __init__(self, gateway: TreasuryGateway, alerts: Optional[AlertSink] = None) -> None:
        self.gateway = gateway
        self.alerts = alerts or LoggingAlertSink()
        self.paused: Optional[bool] = None

    def subscribe(self, bus: EventBus) -> None:
        bus.subscribe(m.FUNDING_INBOUND, self.on_inbound_funding)
        bus.subscribe(m.ADMIN_TRANSFERRED, self.on_admin_transferred)
        bus.subscribe(m.CONTRACT_PAUSED, self.on_pause_changed)
        bus.subscribe(m.CONTRACT_UNPAUSED, self.on_pause_changed)

    async def on_inbound_funding(self, event: m.InboundFunding) -> None:
        log.info("inbound funding: amount=%s rail_tx=%s tx=%s", event.amount, event.rail_tx_id, event.tx_hash)

    async def on_admin_transferred(self, event: m.AdminTransferred) -> None:
        log.warning("treasury admin transferred %s -> %s tx=%s", event.previous_admin, event.new_admin, event.tx_hash)
        await raise_alert(
            self.alerts,
            AlertType.ADMIN_TRANSFERRED,
            f"Treasury admin transferred from {event.previous_admin} to {event.new_admin}",
            AlertSeverity.CRITICAL,
            metadata={
                "previousAdmin": event.previous_admin,
                "newAdmin": event.new_admin,
                "txHash": event.tx_hash,
            },
        )

    async def on_pause_changed(self, event: m.ContractPauseChanged) -> None:
        self.paused = event.paused
        if not event.paused:
            log.info("treasury contract unpaused tx=%s", event.tx_hash)
            return
        log.warning("treasury contract paused tx=%s", event.tx_hash)
        await raise_alert(
            self.alerts,
            AlertType.CONTRACT_PAUSED,
            "Treasury contract has been paused - all operations are disabled",
            AlertSeverity.CRITICAL,
            metadata={"txHash": event.tx_hash, "pausedAt": event.timestamp.isoformat()},
        )

    # ── admin pass-throughs ──

    async def fund_treasury(self, amount: str, rail_tx_id: str) -> str:
        tx_hash = await self.gateway.record_inbound_funding(amount, rail_tx_id)
        log.info("recorded inbound funding amount=%s rail_tx=%s tx=%s", amount, rail_tx_id, tx_hash)
        return tx_hash

    async def pause(self) -> str:
        tx_hash = await self.gateway.pause()
        log.info("treasury pause submitted, tx=%s", tx_hash)
        return tx_hash

    async def unpause(self) -> str:
        tx_hash = await self.gateway.unpause()
        log.info("treasury unpause submitted, tx=%s", tx_hash)
        return tx_hash

    async def transfer_admin(self, new_admin: str) -> str:
        tx_hash = await self.gateway.transfer_admin(new_admin)
        log.info("admin transfer to %s submitted, tx=%s", new_admin, tx_hash)
        return tx_hash
