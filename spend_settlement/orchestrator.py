"""Settlement orchestrator: drives one approved request through the rail.

Steps, strictly in order:
  1. build + sign the burn intent (rail wallet identity)
  2. submit it to the rail -> attestation + signature
  3. mint on the destination chain
  4. mark the spend executed on the treasury contract
  5. persist EXECUTED with all three correlation ids

Each step saves its result on the row as soon as it returns, so a run
interrupted part way (worker crash, cancellation) resumes from the first
unfinished step instead of burning or minting a second time.

Any failure after the status check records FAILED locally, best-effort
marks the spend failed on chain, and re-raises for the job runner.
"""
from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Dict

from .chain_gateway import TreasuryGateway
from .errors import InvalidStatusError, RequestNotFoundError
from .minter import DestinationMinter
from .models import EXECUTABLE_STATUSES, Attestation, SpendStatus
from .rail_client import RailClient
from .store import MirrorStore
from .utils import truncate, utcnow

log = logging.getLogger(__name__)

FAILURE_REASON_LIMIT = 256


@dataclass(slots=True)
class SettlementOutcome:
    request_id: int
    rail_transfer_id: str
    destination_mint_tx_hash: str
    source_settlement_tx_hash: str
    executed_at: dt.datetime


class SettlementOrchestrator:
    def __init__(
        self,
        store: MirrorStore,
        gateway: TreasuryGateway,
        rail: RailClient,
        minter: DestinationMinter,
        *,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.rail = rail
        self.minter = minter
        self.clock = clock

        self.executed = 0
        self.failed = 0

    async def handle_job(self, payload: Dict[str, Any]) -> SettlementOutcome:
        return await self.execute(int(payload["requestId"]))

    async def execute(self, request_id: int) -> SettlementOutcome:
        row = await self.store.get_request(request_id)
        if row is None:
            raise RequestNotFoundError(request_id)
        if row.state not in EXECUTABLE_STATUSES:
            raise InvalidStatusError(request_id, row.status)

        # Saved progress from an interrupted run; finished steps are never repeated.
        transfer_id = row.rail_transfer_id or ""
        mint_tx_hash = row.destination_mint_tx_hash or ""
        settlement_tx_hash = row.source_settlement_tx_hash or ""
        if mint_tx_hash or row.attestation:
            log.info("resuming spend %d (attestation=%s mint=%s settlement=%s)",
                     request_id, bool(row.attestation), mint_tx_hash or "-", settlement_tx_hash or "-")
        else:
            log.info("executing spend %d: %s to %s on chain %d",
                     request_id, row.amount, row.destination_address, row.chain_id)
        await self.store.update_request(request_id, status=SpendStatus.EXECUTING)

        try:
            if not mint_tx_hash:
                if row.attestation and row.attestation_signature:
                    attestation = Attestation(row.attestation, row.attestation_signature, transfer_id)
                else:
                    intent = self.rail.build_burn_intent(row.amount, row.chain_id, row.destination_address)
                    signed = self.rail.sign_burn_intent(intent)

                    attestation = await self.rail.submit_burn_intent(signed)
                    transfer_id = attestation.transfer_id
                    log.info("spend %d: rail attestation received transfer_id=%s", request_id, transfer_id or "-")
                    await self.store.update_request(
                        request_id,
                        attestation=attestation.attestation,
                        attestation_signature=attestation.signature,
                        rail_transfer_id=transfer_id or None,
                    )

                mint_tx_hash = await self.minter.mint_on_destination(
                    row.chain_id, attestation.attestation, attestation.signature
                )
                log.info("spend %d: minted on chain %d tx=%s", request_id, row.chain_id, mint_tx_hash)
                await self.store.update_request(request_id, destination_mint_tx_hash=mint_tx_hash)

            # The mint hash stands in when the rail omits a transfer id.
            transfer_id = transfer_id or mint_tx_hash
            if not settlement_tx_hash:
                settlement_tx_hash = await self._mark_executed(
                    request_id, transfer_id, resumed=bool(row.destination_mint_tx_hash)
                )

            executed_at = self.clock()
            final: Dict[str, Any] = {
                "rail_transfer_id": transfer_id,
                "destination_mint_tx_hash": mint_tx_hash,
                "executed_at": executed_at,
            }
            if settlement_tx_hash:
                final["source_settlement_tx_hash"] = settlement_tx_hash
            await self.store.update_request(request_id, status=SpendStatus.EXECUTED, **final)
        except Exception as exc:
            self.failed += 1
            reason = truncate(str(exc) or type(exc).__name__, FAILURE_REASON_LIMIT)
            log.error("spend %d execution failed: %s", request_id, reason)
            await self._record_failure(request_id, reason)
            raise

        self.executed += 1
        log.info("spend %d executed", request_id)
        return SettlementOutcome(
            request_id=int(request_id),
            rail_transfer_id=transfer_id,
            destination_mint_tx_hash=mint_tx_hash,
            source_settlement_tx_hash=settlement_tx_hash,
            executed_at=executed_at,
        )

    async def _mark_executed(self, request_id: int, transfer_id: str, *, resumed: bool) -> str:
        """Mark executed on the treasury; a resumed run first checks whether that already landed."""
        if resumed:
            snapshot = await self.gateway.get_request(request_id)
            if snapshot.executed:
                log.info("spend %d: already marked executed on treasury", request_id)
                return ""
        tx_hash = await self.gateway.mark_spend_executed(request_id, transfer_id)
        log.info("spend %d: marked executed on treasury tx=%s", request_id, tx_hash)
        await self.store.update_request(request_id, source_settlement_tx_hash=tx_hash)
        return tx_hash

    async def _record_failure(self, request_id: int, reason: str) -> None:
        try:
            await self.store.update_request(request_id, status=SpendStatus.FAILED, failure_reason=reason)
        except Exception:
            log.exception("spend %d: could not persist FAILED status", request_id)
        try:
            await self.gateway.mark_spend_failed(request_id, reason)
        except Exception as exc:
            log.error("spend %d: mark failed on treasury also failed: %s", request_id, exc)
