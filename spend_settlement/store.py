"""Mirror store: SQLAlchemy async ORM over the spend tables.

All mutation is single-row and scoped by ``request_id`` / ``account_id``.
Status transitions are compare-and-set on the current status so two writers
never both win the same transition.
"""
from __future__ import annotations

import datetime as dt
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from sqlalchemy import (
    Boolean, DateTime, Float, Index, Integer, String, Text, select, update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .models import SpendStatus
from .utils import utcnow

log = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class SpendAccountRow(Base):
    __tablename__ = "spend_accounts"

    account_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    owner_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    approver_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    label: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    # Amounts are integer token units kept as decimal strings.
    budget_per_period: Mapped[str] = mapped_column(String(78), default="0", nullable=False)
    period_duration: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    per_tx_limit: Mapped[str] = mapped_column(String(78), default="0", nullable=False)
    daily_limit: Mapped[str] = mapped_column(String(78), default="0", nullable=False)
    approval_threshold: Mapped[str] = mapped_column(String(78), default="0", nullable=False)
    period_spent: Mapped[str] = mapped_column(String(78), default="0", nullable=False)
    period_reserved: Mapped[str] = mapped_column(String(78), default="0", nullable=False)
    daily_spent: Mapped[str] = mapped_column(String(78), default="0", nullable=False)
    daily_reserved: Mapped[str] = mapped_column(String(78), default="0", nullable=False)
    period_start: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    daily_reset_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)

    frozen: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    closed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    allowed_chains: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    auto_topup_min_balance: Mapped[Optional[str]] = mapped_column(String(78), nullable=True)
    auto_topup_target_balance: Mapped[Optional[str]] = mapped_column(String(78), nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    @property
    def chain_ids(self) -> List[int]:
        return sorted(int(c) for c in self.allowed_chains.split(",") if c.strip())


class SpendRequestRow(Base):
    __tablename__ = "spend_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    requester_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[str] = mapped_column(String(78), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    destination_address: Mapped[str] = mapped_column(String(42), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    status: Mapped[str] = mapped_column(String(32), default=SpendStatus.PENDING_APPROVAL.value, nullable=False)

    requested_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    approved_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    executed_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)

    # Settlement progress, saved after each step so a re-run resumes.
    attestation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attestation_signature: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rail_transfer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    destination_mint_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    source_settlement_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_spend_requests_status_updated", "status", "updated_at"),
    )

    @property
    def state(self) -> SpendStatus:
        return SpendStatus(self.status)


class SettlementJobRow(Base):
    __tablename__ = "settlement_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, default="{}", nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    # Equals dedupe_key while waiting/active, NULL once finished.
    active_key: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="waiting", nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    backoff_seconds: Mapped[float] = mapped_column(Float, default=5.0, nullable=False)
    run_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_settlement_jobs_status_run_at", "status", "run_at"),
    )


def _status_value(status: Any) -> str:
    return status.value if isinstance(status, SpendStatus) else str(status)


class MirrorStore:
    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=echo)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )

    async def init(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        log.info("mirror store ready: %s", self.engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # ── spend requests ──

    async def get_request(self, request_id: int) -> Optional[SpendRequestRow]:
        async with self.session() as s:
            result = await s.execute(select(SpendRequestRow).where(SpendRequestRow.request_id == int(request_id)))
            return result.scalar_one_or_none()

    async def insert_request(self, fields: Dict[str, Any]) -> bool:
        """Insert once per request_id; False when the row already exists."""
        row = SpendRequestRow(**fields)
        try:
            async with self.session() as s:
                s.add(row)
        except IntegrityError:
            return False
        return True

    async def update_request(
        self,
        request_id: int,
        *,
        from_statuses: Optional[Iterable[Any]] = None,
        **fields: Any,
    ) -> bool:
        """Single-row update; with *from_statuses* it only applies when the
        current status is one of them. Returns whether a row changed."""
        if "status" in fields:
            fields["status"] = _status_value(fields["status"])
        fields.setdefault("updated_at", utcnow())
        stmt = update(SpendRequestRow).where(SpendRequestRow.request_id == int(request_id))
        if from_statuses is not None:
            stmt = stmt.where(SpendRequestRow.status.in_([_status_value(s) for s in from_statuses]))
        async with self.session() as s:
            result = await s.execute(stmt.values(**fields))
            return bool(result.rowcount)

    async def list_requests(
        self,
        *,
        account_id: Optional[int] = None,
        status: Optional[Any] = None,
        limit: int = 100,
    ) -> List[SpendRequestRow]:
        stmt = select(SpendRequestRow)
        if account_id is not None:
            stmt = stmt.where(SpendRequestRow.account_id == int(account_id))
        if status is not None:
            stmt = stmt.where(SpendRequestRow.status == _status_value(status))
        stmt = stmt.order_by(SpendRequestRow.created_at.desc(), SpendRequestRow.request_id.desc())
        stmt = stmt.limit(max(1, int(limit)))
        async with self.session() as s:
            return list((await s.execute(stmt)).scalars().all())

    async def find_stale(self, status: Any, updated_before: dt.datetime) -> List[SpendRequestRow]:
        stmt = (
            select(SpendRequestRow)
            .where(SpendRequestRow.status == _status_value(status))
            .where(SpendRequestRow.updated_at < updated_before)
            .order_by(SpendRequestRow.updated_at.asc())
        )
        async with self.session() as s:
            return list((await s.execute(stmt)).scalars().all())

    # ── spend accounts ──

    async def get_account(self, account_id: int) -> Optional[SpendAccountRow]:
        async with self.session() as s:
            return await s.get(SpendAccountRow, int(account_id))

    async def upsert_account(self, account_id: int, fields: Dict[str, Any]) -> SpendAccountRow:
        now = utcnow()
        async with self.session() as s:
            row = await s.get(SpendAccountRow, int(account_id))
            if row is None:
                row = SpendAccountRow(account_id=int(account_id), created_at=now, updated_at=now, **fields)
                s.add(row)
            else:
                for key, value in fields.items():
                    setattr(row, key, value)
                row.updated_at = now
            return row

    async def _accounts(self, *where: Any) -> List[SpendAccountRow]:
        stmt = select(SpendAccountRow).where(*where).order_by(SpendAccountRow.account_id.asc())
        async with self.session() as s:
            return list((await s.execute(stmt)).scalars().all())

    async def list_accounts(self) -> List[SpendAccountRow]:
        return await self._accounts()

    async def list_accounts_by_owner(self, owner_address: str) -> List[SpendAccountRow]:
        return await self._accounts(SpendAccountRow.owner_address == owner_address.strip().lower())

    async def list_accounts_by_approver(self, approver_address: str) -> List[SpendAccountRow]:
        return await self._accounts(SpendAccountRow.approver_address == approver_address.strip().lower())