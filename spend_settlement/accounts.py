"""Spend-account mirror: refresh from chain on account events, plus admin writes."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from . import models as m
from .alerts import AlertSink, LoggingAlertSink, raise_alert
from .chain_gateway import TreasuryGateway
from .event_bus import EventBus
from .models import AlertSeverity, AlertType, WriteResult
from .reconcile import account_fields
from .store import MirrorStore, SpendAccountRow

log = logging.getLogger(__name__)

# Flags an account event implies when the chain cannot be read back.
_EVENT_FLAGS: Dict[str, Dict[str, bool]] = {
    m.ACCOUNT_FROZEN: {"frozen": True},
    m.ACCOUNT_UNFROZEN: {"frozen": False},
    m.ACCOUNT_CLOSED: {"closed": True},
}


class AccountMirror:
    def __init__(
        self,
        store: MirrorStore,
        gateway: TreasuryGateway,
        alerts: Optional[AlertSink] = None,
        *,
        sync_interval: float = 300.0,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.alerts = alerts or LoggingAlertSink()
        self.sync_interval = max(1.0, float(sync_interval))
        self._running = False

    def subscribe(self, bus: EventBus) -> None:
        for name in (m.ACCOUNT_CREATED, m.ACCOUNT_UPDATED, m.ACCOUNT_FROZEN, m.ACCOUNT_UNFROZEN, m.ACCOUNT_CLOSED):
            bus.subscribe(name, self.on_account_event)

    # ── event handlers ──

    async def on_account_event(self, event: m.AccountEvent) -> Optional[SpendAccountRow]:
        log.info("account %s event: account=%d tx=%s", event.kind, event.account_id, event.tx_hash)
        try:
            row = await self.sync_account(event.account_id)
        except Exception:
            flags = _EVENT_FLAGS.get(event.kind)
            if not flags or await self.store.get_account(event.account_id) is None:
                raise
            log.exception("account %d refresh failed, applying %s from the event", event.account_id, flags)
            row = await self.store.upsert_account(event.account_id, flags)

        if event.kind == m.ACCOUNT_FROZEN:
            await raise_alert(
                self.alerts,
                AlertType.ACCOUNT_FROZEN,
                f"Spend account {event.account_id} has been frozen",
                AlertSeverity.WARNING,
                related_account_id=event.account_id,
            )
        elif event.kind == m.ACCOUNT_CLOSED:
            await raise_alert(
                self.alerts,
                AlertType.ACCOUNT_CLOSED,
                f"Spend account {event.account_id} has been closed",
                AlertSeverity.INFO,
                related_account_id=event.account_id,
            )
        return row

    # ── chain sync ──

    async def sync_account(self, account_id: int) -> SpendAccountRow:
        """Overwrite the mirror row with the chain's current snapshot."""
        snapshot = await self.gateway.get_account(account_id)
        existing = await self.store.get_account(account_id)
        row = await self.store.upsert_account(account_id, account_fields(snapshot, existing))
        log.debug("account %d synced (frozen=%s closed=%s)", account_id, row.frozen, row.closed)
        return row

    async def sync_all(self) -> Dict[str, int]:
        next_id = await self.gateway.get_next_account_id()
        total = max(0, next_id - 1)
        synced = failed = 0
        for account_id in range(1, next_id):
            try:
                await self.sync_account(account_id)
                synced += 1
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failed += 1
                log.error("account %d sync failed: %s", account_id, exc)
        log.info("account sync: %d/%d synced, %d failed", synced, total, failed)
        return {"synced": synced, "failed": failed, "total": total}

    async def run(self) -> None:
        """Periodic full sync until stopped."""
        self._running = True
        log.info("account sync loop started (every %.0fs)", self.sync_interval)
        while self._running:
            try:
                await self.sync_all()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("account sync cycle failed")
            await asyncio.sleep(self.sync_interval)

    def stop(self) -> None:
        self._running = False

    # ── reads ──

    async def list_accounts(self) -> List[SpendAccountRow]:
        return await self.store.list_accounts()

    async def get_account(self, account_id: int) -> Optional[SpendAccountRow]:
        return await self.store.get_account(account_id)

    async def list_by_owner(self, owner_address: str) -> List[SpendAccountRow]:
        return await self.store.list_accounts_by_owner(owner_address)

    async def list_by_approver(self, approver_address: str) -> List[SpendAccountRow]:
        return await self.store.list_accounts_by_approver(approver_address)

    # ── admin pass-throughs ──

    async def create_account(
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
        result = await self.gateway.create_spend_account(
            owner, label, budget_per_period, period_duration, per_tx_limit,
            daily_limit, approval_threshold, approver, allowed_chains,
        )
        log.info("account created: account=%d tx=%s", result.new_id, result.tx_hash)
        return result

    async def update_account(self, account_id: int, **changes: Any) -> str:
        tx_hash = await self.gateway.update_spend_account(account_id, **changes)
        log.info("account %d updated, tx=%s", account_id, tx_hash)
        return tx_hash

    async def freeze_account(self, account_id: int) -> str:
        tx_hash = await self.gateway.freeze_account(account_id)
        log.info("account %d frozen, tx=%s", account_id, tx_hash)
        return tx_hash

    async def unfreeze_account(self, account_id: int) -> str:
        tx_hash = await self.gateway.unfreeze_account(account_id)
        log.info("account %d unfrozen, tx=%s", account_id, tx_hash)
        return tx_hash

    async def close_account(self, account_id: int) -> str:
        tx_hash = await self.gateway.close_account(account_id)
        log.info("account %d closed, tx=%s", account_id, tx_hash)
        return tx_hash

    async def update_allowed_chains(self, account_id: int, allowed_chains: Iterable[int]) -> str:
        chains = list(allowed_chains)
        tx_hash = await self.gateway.update_allowed_chains(account_id, chains)
        log.info("account %d allowed chains -> %s, tx=%s", account_id, chains, tx_hash)
        return tx_hash

    async def configure_auto_topup(self, account_id: int, min_balance: str, target_balance: str) -> str:
        tx_hash = await self.gateway.set_auto_topup_config(account_id, min_balance, target_balance)
        log.info("account %d auto-topup min=%s target=%s, tx=%s", account_id, min_balance, target_balance, tx_hash)
        return tx_hash

    async def execute_auto_topup(self, account_id: int) -> str:
        tx_hash = await self.gateway.auto_topup(account_id)
        log.info("account %d auto-topup executed, tx=%s", account_id, tx_hash)
        return tx_hash

    async def sweep_account(self, account_id: int) -> str:
        tx_hash = await self.gateway.sweep_account(account_id)
        log.info("account %d swept, tx=%s", account_id, tx_hash)
        return tx_hash

    async def reset_period(self, account_id: int) -> str:
        tx_hash = await self.gateway.reset_period(account_id)
        log.info("account %d period reset, tx=%s", account_id, tx_hash)
        return tx_hash
