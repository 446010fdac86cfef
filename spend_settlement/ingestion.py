"""Treasury event ingestion: websocket log subscriptions -> typed bus events.

One persistent websocket connection carries one ``logs`` subscription per
treasury event. Each log is decoded with the treasury ABI, stamped with its
block time and published on the event bus. Nothing here touches the mirror.

Usage:
    ingest = EventIngestion(cfg.ws_url, treasury_contract, bus)
    await ingest.run()          # blocks, reconnects after drops
"""
from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any, Dict, Iterable, Optional, Tuple

from web3 import AsyncWeb3, Web3, WebSocketProvider

from . import models as m
from .retry import RetryPolicy, call_with_retry
from .treasury_abi import EVENT_ROUTES, event_signature
from .utils import amount_str, from_unix, lower_address, to_hex, utcnow

log = logging.getLogger(__name__)

_ACCOUNT_KINDS = {
    "SpendAccountCreated": m.ACCOUNT_CREATED,
    "SpendAccountUpdated": m.ACCOUNT_UPDATED,
    "SpendAccountFrozen": m.ACCOUNT_FROZEN,
    "SpendAccountUnfrozen": m.ACCOUNT_UNFROZEN,
    "SpendAccountClosed": m.ACCOUNT_CLOSED,
}

BLOCK_CACHE_SIZE = 256


def event_topic(name: str) -> str:
    return Web3.to_hex(Web3.keccak(text=event_signature(name)))


def websocket_web3(url: str) -> AsyncWeb3:
    return AsyncWeb3(WebSocketProvider(url))


def build_event(name: str, args: Any, block_number: int, tx_hash: str, timestamp: dt.datetime) -> Any:
    """Decoded treasury log -> typed domain event."""
    a = dict(args)
    if name == "SpendRequested":
        return m.SpendRequested(
            request_id=int(a["requestId"]),
            account_id=int(a["accountId"]),
            requester_address=lower_address(a["requester"]),
            amount=amount_str(a["amount"]),
            chain_id=int(a["chainId"]),
            destination_address=lower_address(a["destinationAddress"]),
            description="",
            block_number=block_number,
            tx_hash=tx_hash,
            timestamp=timestamp,
        )
    if name == "SpendApproved":
        return m.SpendApproved(
            request_id=int(a["requestId"]),
            account_id=int(a["accountId"]),
            approver_address=lower_address(a["approver"]),
            amount=amount_str(a["amount"]),
            block_number=block_number,
            tx_hash=tx_hash,
            timestamp=timestamp,
        )
    if name == "SpendRejected":
        return m.SpendRejected(
            request_id=int(a["requestId"]),
            account_id=int(a["accountId"]),
            approver_address=lower_address(a["approver"]),
            reason=str(a.get("reason") or ""),
            block_number=block_number,
            tx_hash=tx_hash,
            timestamp=timestamp,
        )
    if name == "SpendExecuted":
        return m.SpendExecuted(
            request_id=int(a["requestId"]),
            account_id=int(a["accountId"]),
            amount=amount_str(a["amount"]),
            rail_transfer_id=str(a.get("gatewayTxId") or ""),
            block_number=block_number,
            tx_hash=tx_hash,
            timestamp=timestamp,
        )
    if name == "SpendFailed":
        return m.SpendFailed(
            request_id=int(a["requestId"]),
            account_id=int(a["accountId"]),
            reason=str(a.get("reason") or ""),
            block_number=block_number,
            tx_hash=tx_hash,
            timestamp=timestamp,
        )
    if name in _ACCOUNT_KINDS:
        owner = a.get("owner")
        return m.AccountEvent(
            kind=_ACCOUNT_KINDS[name],
            account_id=int(a["accountId"]),
            block_number=block_number,
            tx_hash=tx_hash,
            timestamp=timestamp,
            owner_address=lower_address(owner) if owner else None,
            label=a.get("label"),
        )
    if name == "InboundFunding":
        return m.InboundFunding(
            amount=amount_str(a["amount"]),
            rail_tx_id=str(a.get("gatewayTxId") or ""),
            block_number=block_number,
            tx_hash=tx_hash,
            timestamp=from_unix(a.get("timestamp")) or timestamp,
        )
    if name == "AdminTransferred":
        return m.AdminTransferred(
            previous_admin=lower_address(a["previousAdmin"]),
            new_admin=lower_address(a["newAdmin"]),
            block_number=block_number,
            tx_hash=tx_hash,
            timestamp=timestamp,
        )
    if name in ("ContractPaused", "ContractUnpaused"):
        return m.ContractPauseChanged(
            paused=name == "ContractPaused",
            block_number=block_number,
            tx_hash=tx_hash,
            timestamp=timestamp,
        )
    raise KeyError(name)


class EventIngestion:
    def __init__(
        self,
        ws_url: str,
        contract: Any,
        bus: Any,
        *,
        events: Optional[Iterable[str]] = None,
        subscribe_delay: float = 0.2,
        reconnect_delay: float = 5.0,
        policy: Optional[RetryPolicy] = None,
        web3_factory: Callable[[str], Any] = websocket_web3,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.ws_url = ws_url
        self.contract = contract
        self.bus = bus
        self.events = list(events or EVENT_ROUTES)
        self.subscribe_delay = max(0.0, float(subscribe_delay))
        self.reconnect_delay = max(0.1, float(reconnect_delay))
        self.policy = policy or RetryPolicy()
        self.web3_factory = web3_factory
        self.sleep = sleep
        self._subscriptions: Dict[str, str] = {}
        self._block_times: "OrderedDict[int, dt.datetime]" = OrderedDict()
        self._running = False

        self.received = 0
        self.decode_errors = 0
        self.handler_errors = 0

    # ── Public API ──

    async def run(self) -> None:
        """Connect, subscribe and stream forever with auto-reconnect."""
        self._running = True
        while self._running:
            try:
                await self._stream()
            except asyncio.CancelledError:
                log.info("event ingestion cancelled")
                self._running = False
                raise
            except Exception:
                log.exception("event ingestion error, reconnecting in %.0fs", self.reconnect_delay)
            if self._running:
                await self.sleep(self.reconnect_delay)

    def stop(self) -> None:
        self._running = False

    # ── Internals ──

    async def _subscribe(self, w3: Any) -> None:
        self._subscriptions.clear()
        address = self.contract.address
        for i, name in enumerate(self.events):
            if i and self.subscribe_delay:
                await self.sleep(self.subscribe_delay)
            sub_id = await w3.eth.subscribe("logs", {"address": address, "topics": [event_topic(name)]})
            self._subscriptions[str(sub_id)] = name
            log.debug("subscribed to %s (%s)", name, sub_id)
        log.info("listening for %d treasury events on %s", len(self._subscriptions), address)

    async def _stream(self) -> None:
        log.info("connecting to %s", self.ws_url)
        async with self.web3_factory(self.ws_url) as w3:
            await self._subscribe(w3)
            async for message in w3.socket.process_subscriptions():
                name = self._subscriptions.get(str(message.get("subscription")))
                if name is None:
                    continue
                try:
                    await self.handle_log(name, message.get("result"))
                except Exception:
                    # One bad log must not drop the subscription.
                    self.handler_errors += 1
                    log.exception("failed to handle %s log, skipping", name)
                if not self._running:
                    break
        log.warning("event subscription stream ended")

    async def _block_time(self, block_number: int) -> dt.datetime:
        cached = self._block_times.get(block_number)
        if cached is not None:
            return cached
        block = await call_with_retry(
            lambda: self.contract.w3.eth.get_block(block_number),
            policy=self.policy,
            label=f"get_block({block_number})",
            sleep=self.sleep,
        )
        stamp = from_unix(block["timestamp"]) or utcnow()
        self._block_times[block_number] = stamp
        while len(self._block_times) > BLOCK_CACHE_SIZE:
            self._block_times.popitem(last=False)
        return stamp

    def _decode(self, name: str, raw_log: Any) -> Any:
        return getattr(self.contract.events, name)().process_log(raw_log)

    async def handle_log(self, name: str, raw_log: Any) -> Optional[Tuple[str, Any]]:
        """Decode, stamp and publish one log. Returns (bus name, event)."""
        self.received += 1
        try:
            decoded = self._decode(name, raw_log)
        except Exception:
            self.decode_errors += 1
            log.exception("could not decode %s log", name)
            return None

        args = decoded["args"]
        block_number = int(decoded["blockNumber"])
        tx_hash = to_hex(decoded["transactionHash"])
        if name == "InboundFunding" and args.get("timestamp"):
            timestamp = from_unix(args["timestamp"]) or utcnow()
        else:
            try:
                timestamp = await self._block_time(block_number)
            except Exception as exc:
                log.warning("no timestamp for block %d (%s), using local time", block_number, exc)
                timestamp = utcnow()

        event = build_event(name, args, block_number, tx_hash, timestamp)
        bus_name = EVENT_ROUTES[name]
        log.debug("%s block=%d tx=%s", name, block_number, tx_hash)
        self.bus.publish(bus_name, event)
        return bus_name, event
