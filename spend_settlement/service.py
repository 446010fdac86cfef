"""Entry point: wires the settlement core and runs it.

    ┌──────────────┐
    │ Treasury WS   │──logs──→ EventIngestion ──→ EventBus
    └──────────────┘                               │
                     RequestLifecycle / AccountMirror / TreasuryWatcher
                                   │ execute-spend
                                JobQueue ──→ SettlementOrchestrator
                                               ├─ RailClient (sign, submit)
                                               ├─ DestinationMinter
                                               └─ TreasuryGateway (mark executed)
    StuckRequestSweeper (every 5 min) ──→ JobQueue.run_exclusive

Usage:
    python -m spend_settlement.service [--env-file .env.settlement.local]
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import List, Optional

from web3 import AsyncWeb3

from .accounts import AccountMirror
from .alerts import AlertSink, LoggingAlertSink
from .chain_gateway import TreasuryGateway
from .chain_tx import GasSettings, TransactionSender
from .chains import ChainRegistry
from .config import SettlementConfig, parse_args, require_service_settings
from .event_bus import EventBus
from .http_json import JsonHttpClient
from .ingestion import EventIngestion
from .job_queue import JobQueue
from .lifecycle import EXECUTE_SPEND_JOB, RequestLifecycle
from .minter import DestinationMinter, http_web3
from .orchestrator import SettlementOrchestrator
from .rail_client import RailClient
from .signers import load_signers
from .store import MirrorStore
from .sweeper import StuckRequestSweeper
from .treasury_abi import TREASURY_ABI
from .treasury_watch import TreasuryWatcher

log = logging.getLogger(__name__)

USER_AGENT = "spend-settlement/0.1"


def gas_settings(cfg: SettlementConfig) -> GasSettings:
    return GasSettings(
        gas_multiplier=cfg.gas_multiplier,
        gas_floor=cfg.gas_floor,
        gas_cap=cfg.gas_cap,
        priority_fee_gwei=cfg.priority_fee_gwei,
        max_fee_base_multiplier=cfg.max_fee_base_multiplier,
        legacy_gas_price_multiplier=cfg.legacy_gas_price_multiplier,
        receipt_timeout_seconds=cfg.receipt_timeout_seconds,
    )


class SettlementService:
    """Owns every component and their shared resources."""

    def __init__(self, cfg: SettlementConfig, alerts: Optional[AlertSink] = None) -> None:
        self.cfg = cfg
        policy = cfg.retry_policy
        gas = gas_settings(cfg)
        self.signers = load_signers(cfg)

        # Source chain
        source_w3 = http_web3(cfg.rpc_url, cfg.http_timeout_seconds)
        self.contract = source_w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(cfg.treasury_address), abi=TREASURY_ABI
        )
        sender = TransactionSender(source_w3, gas=gas, policy=policy)
        self.gateway = TreasuryGateway(self.contract, sender, self.signers.operator, self.signers.admin, policy)

        # Settlement rail
        self.registry = ChainRegistry.default(cfg.destination_rpc_urls)
        http = JsonHttpClient(cfg.rail_api_base, cfg.http_timeout_seconds, USER_AGENT)
        self.rail = RailClient(self.registry, self.signers.rail, http, policy)
        self.minter = DestinationMinter(self.registry, self.signers.rail, gas=gas, policy=policy)

        # Mirror, queue, bus
        self.store = MirrorStore(cfg.database_url)
        self.queue = JobQueue(self.store, poll_interval=cfg.queue_poll_interval_seconds)
        self.bus = EventBus()
        self.alerts = alerts or LoggingAlertSink()

        self.lifecycle = RequestLifecycle(
            self.store,
            self.queue,
            self.gateway,
            poll_attempts=cfg.approval_poll_attempts,
            poll_interval=cfg.approval_poll_interval_seconds,
            job_max_attempts=cfg.job_max_attempts,
            job_backoff_seconds=cfg.job_backoff_seconds,
        )
        self.accounts = AccountMirror(
            self.store, self.gateway, self.alerts, sync_interval=cfg.account_sync_interval_seconds
        )
        self.treasury = TreasuryWatcher(self.gateway, self.alerts)
        self.orchestrator = SettlementOrchestrator(self.store, self.gateway, self.rail, self.minter)
        self.sweeper = StuckRequestSweeper(
            self.store,
            self.gateway,
            self.queue,
            interval=cfg.sweep_interval_seconds,
            stuck_threshold=cfg.stuck_threshold_seconds,
            hard_timeout=cfg.hard_timeout_seconds,
            escalation=cfg.escalation_seconds,
        )
        self.ingestion = EventIngestion(
            cfg.ws_url,
            self.contract,
            self.bus,
            subscribe_delay=cfg.subscribe_delay_seconds,
            reconnect_delay=cfg.reconnect_delay_seconds,
            policy=policy,
        )

        self._wire()

    def _wire(self) -> None:
        self.queue.register(EXECUTE_SPEND_JOB, self.orchestrator.handle_job)
        self.lifecycle.subscribe(self.bus)
        self.accounts.subscribe(self.bus)
        self.treasury.subscribe(self.bus)

    async def run(self) -> None:
        """Start all loops; stop everything when any of them exits."""
        await self.store.init()
        log.info("treasury: %s", self.cfg.treasury_address)
        log.info("destinations: %s", [c.name for c in self.registry.destinations()])
        log.info("queue workers: %d, sweep every %.0fs", self.cfg.queue_workers, self.cfg.sweep_interval_seconds)

        tasks = [
            asyncio.create_task(self.ingestion.run(), name="ingestion"),
            asyncio.create_task(self.queue.run(self.cfg.queue_workers), name="queue"),
            asyncio.create_task(self.sweeper.run(), name="sweeper"),
        ]
        if self.cfg.account_sync_enabled:
            tasks.append(asyncio.create_task(self.accounts.run(), name="account-sync"))

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for t in done:
                if not t.cancelled() and t.exception():
                    log.error("task %s failed: %s", t.get_name(), t.exception())
        except asyncio.CancelledError:
            log.info("service cancelled")
        finally:
            self.ingestion.stop()
            self.queue.stop()
            self.sweeper.stop()
            self.accounts.stop()
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.bus.drain()
            await self.close()
            log.info("stopped. queue=%s bus_events=%d", self.queue.snapshot(), self.bus.published)

    async def close(self) -> None:
        await self.rail.close()
        await self.store.close()


def main(argv: Optional[List[str]] = None) -> int:
    cfg = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s  %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    require_service_settings(cfg)

    service = SettlementService(cfg)
    loop = asyncio.new_event_loop()
    main_task = loop.create_task(service.run(), name="service")

    # Graceful shutdown on SIGINT/SIGTERM
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, main_task.cancel)
        except NotImplementedError:
            pass

    try:
        loop.run_until_complete(main_task)
    except KeyboardInterrupt:
        log.info("interrupted")
    except asyncio.CancelledError:
        log.info("shutdown requested")
    finally:
        loop.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
