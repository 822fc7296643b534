"""SQLAlchemy database models and session management.

This module defines the journal schema for the lending ledger: every
committed ledger operation is appended to ``ledger_events``, and the
liquidation monitor periodically records ``pool_snapshots``. It uses
SQLAlchemy with async support for non-blocking database operations.
"""

import json
import logging
from datetime import datetime
from typing import List

from sqlalchemy import Column, Integer, String, DateTime, BigInteger, Boolean, Text, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from lendledger.config import get_settings
from lendledger.core.events import EventSink, LedgerEvent
from lendledger.core.pool import PoolSummary

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class LedgerEventRecord(Base):
    __tablename__ = "ledger_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(32), nullable=False, index=True)
    asset = Column(String(64), nullable=False, index=True)
    user = Column(String(128), nullable=True, index=True)
    loan_id = Column(Integer, nullable=True)
    # Amounts are stored as text: token units routinely exceed 64 bits
    amount = Column(String(80), nullable=False)
    ledger_time = Column(BigInteger, nullable=False)
    details = Column(Text, nullable=False, default="{}")
    recorded_at = Column(DateTime, default=datetime.utcnow)


class PoolSnapshot(Base):
    __tablename__ = "pool_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    asset = Column(String(64), nullable=False, index=True)
    active = Column(Boolean, nullable=False, default=True)
    total_deposits = Column(String(80), nullable=False)
    total_borrows = Column(String(80), nullable=False)
    total_shares = Column(String(80), nullable=False)
    utilization = Column(Integer, nullable=False)
    borrow_rate = Column(Integer, nullable=False)
    supply_rate = Column(Integer, nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)


class Database:
    def __init__(self, database_url: str | None = None):
        self.database_url = database_url or get_settings().database_url
        self.engine = create_async_engine(self.database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()


class EventJournal(EventSink):
    """Appends committed ledger events to the ``ledger_events`` table."""

    def __init__(self, database: Database):
        self._db = database

    async def publish(self, event: LedgerEvent) -> None:
        async with self._db.async_session() as session:
            session.add(
                LedgerEventRecord(
                    kind=event.kind.value,
                    asset=event.asset,
                    user=event.user,
                    loan_id=event.loan_id,
                    amount=str(event.amount),
                    ledger_time=event.timestamp,
                    details=json.dumps(event.details, default=str, sort_keys=True),
                )
            )
            await session.commit()

    async def recent(self, limit: int = 100, asset: str | None = None) -> List[LedgerEventRecord]:
        async with self._db.async_session() as session:
            query = select(LedgerEventRecord).order_by(LedgerEventRecord.id.desc()).limit(limit)
            if asset is not None:
                query = query.where(LedgerEventRecord.asset == asset)
            result = await session.execute(query)
            return list(result.scalars().all())


async def record_pool_snapshots(database: Database, summaries: List[PoolSummary]) -> int:
    """Store one snapshot row per pool. Returns the number of rows written."""
    if not summaries:
        return 0
    async with database.async_session() as session:
        for summary in summaries:
            session.add(
                PoolSnapshot(
                    asset=summary.asset,
                    active=summary.active,
                    total_deposits=str(summary.total_deposits),
                    total_borrows=str(summary.total_borrows),
                    total_shares=str(summary.total_shares),
                    utilization=summary.utilization,
                    borrow_rate=summary.borrow_rate,
                    supply_rate=summary.supply_rate,
                )
            )
        await session.commit()
    logger.debug(f"Recorded {len(summaries)} pool snapshots")
    return len(summaries)
