"""
SQL-backed Call Record Store.

Async SQLAlchemy implementation of the store contract. Conditional writes are
single UPDATE statements so the database arbitrates races between devices.
"""

import logging
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.exc import SQLAlchemyError

from family_calls.models.call_record import CallRecord, Party, CANDIDATE_FIELDS, utcnow
from family_calls.models.database_models import Base, CallRecordRow
from family_calls.services.record_store import (
    CallRecordStore,
    ChangeEvent,
    RecordQuery,
    UpdateResult,
    WriteCondition,
)
from family_calls.utils.exceptions import StoreException

logger = logging.getLogger(__name__)


def _serialize_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    values = {}
    for key, value in patch.items():
        values[key] = value.value if isinstance(value, Enum) else value
    return values


def _condition_clauses(condition: Optional[WriteCondition]) -> list:
    if condition is None:
        return []
    clauses = []
    if condition.status_in:
        clauses.append(CallRecordRow.status.in_([s.value for s in condition.status_in]))
    if condition.status_not_in:
        clauses.append(CallRecordRow.status.not_in([s.value for s in condition.status_not_in]))
    for name in condition.fields_null:
        clauses.append(getattr(CallRecordRow, name).is_(None))
    for name in condition.fields_present:
        clauses.append(getattr(CallRecordRow, name).is_not(None))
    return clauses


def _query_clauses(filters: RecordQuery) -> list:
    clauses = []
    if filters.participant_id is not None:
        clauses.append(
            (CallRecordRow.caller_id == filters.participant_id)
            | (CallRecordRow.callee_id == filters.participant_id)
        )
    if filters.caller_id is not None:
        clauses.append(CallRecordRow.caller_id == filters.caller_id)
    if filters.callee_id is not None:
        clauses.append(CallRecordRow.callee_id == filters.callee_id)
    if filters.status is not None:
        clauses.append(CallRecordRow.status == filters.status.value)
    if filters.created_after is not None:
        clauses.append(CallRecordRow.created_at >= filters.created_after)
    return clauses


class SqlCallRecordStore(CallRecordStore):
    """
    Async database store for call records.

    Change notifications are published through an optional change feed
    (normally RedisChangeFeed). Without one, subscribe() yields nothing and
    devices rely on polling.
    """

    def __init__(self, database_url: str, change_feed=None, echo: bool = False):
        """
        Initialize database store.

        Args:
            database_url: SQLAlchemy async URL (postgresql+asyncpg://...)
            change_feed: Publisher/subscriber for change events
            echo: Log SQL statements
        """
        self.database_url = database_url
        self.change_feed = change_feed
        self.echo = echo
        self.engine = None
        self.async_session_maker = None

    async def init(self) -> None:
        """Initialize database engine and create tables."""
        try:
            engine_kwargs = {"echo": self.echo, "pool_pre_ping": True}
            if not self.database_url.startswith("sqlite"):
                engine_kwargs.update(pool_size=5, max_overflow=10)

            self.engine = create_async_engine(self.database_url, **engine_kwargs)

            self.async_session_maker = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            logger.info("Call store database initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StoreException(f"Database initialization failed: {str(e)}")

    async def close(self) -> None:
        """Close database connection."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            logger.info("Database connection closed")

    async def get_session(self) -> AsyncSession:
        """Get async database session."""
        if not self.async_session_maker:
            await self.init()
        return self.async_session_maker()

    async def _publish(self, kind: str, call_id: str) -> None:
        if not self.change_feed:
            return
        record = await self.get(call_id)
        if record is None:
            return
        try:
            await self.change_feed.publish(ChangeEvent(kind=kind, record=record))
        except StoreException as e:
            # The feed is best-effort; polling recovers the change
            logger.warning(f"Change feed publish failed for {call_id}: {e}")

    async def create(self, record: CallRecord) -> str:
        try:
            async with await self.get_session() as session:
                row = CallRecordRow.from_record(record)
                if row.created_at is None:
                    row.created_at = utcnow()
                session.add(row)
                await session.commit()
                call_id = row.id

            logger.info(f"Created call record {call_id} ({record.caller_id} -> {record.callee_id})")

        except SQLAlchemyError as e:
            logger.error(f"Database error creating call record: {e}")
            raise StoreException(f"Failed to create call record: {str(e)}")

        await self._publish("insert", call_id)
        return call_id

    async def update(
        self,
        call_id: str,
        patch: Dict[str, Any],
        condition: Optional[WriteCondition] = None,
    ) -> UpdateResult:
        try:
            async with await self.get_session() as session:
                stmt = (
                    update(CallRecordRow)
                    .where(CallRecordRow.id == call_id, *_condition_clauses(condition))
                    .values(**_serialize_patch(patch))
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                await session.commit()

        except SQLAlchemyError as e:
            logger.error(f"Database error updating call {call_id}: {e}")
            raise StoreException(f"Failed to update call record: {str(e)}")

        if result.rowcount != 1:
            logger.debug(f"Conditional update on {call_id} matched no row")
            return UpdateResult.CONFLICT

        await self._publish("update", call_id)
        return UpdateResult.SUCCESS

    async def append_candidates(
        self,
        call_id: str,
        party: Party,
        candidates: Iterable[Dict[str, Any]],
    ) -> UpdateResult:
        field_name = CANDIDATE_FIELDS[party]
        try:
            async with await self.get_session() as session:
                async with session.begin():
                    stmt = (
                        select(CallRecordRow)
                        .where(CallRecordRow.id == call_id)
                        .with_for_update()
                    )
                    result = await session.execute(stmt)
                    row = result.scalar_one_or_none()
                    if row is None:
                        return UpdateResult.CONFLICT

                    # JSON columns only detect reassignment
                    existing = list(getattr(row, field_name) or [])
                    setattr(row, field_name, existing + [dict(c) for c in candidates])

        except SQLAlchemyError as e:
            logger.error(f"Database error appending candidates to {call_id}: {e}")
            raise StoreException(f"Failed to append candidates: {str(e)}")

        await self._publish("update", call_id)
        return UpdateResult.SUCCESS

    async def get(self, call_id: str) -> Optional[CallRecord]:
        try:
            async with await self.get_session() as session:
                result = await session.execute(
                    select(CallRecordRow).where(CallRecordRow.id == call_id)
                )
                row = result.scalar_one_or_none()
                return row.to_record() if row else None

        except SQLAlchemyError as e:
            logger.error(f"Database error reading call {call_id}: {e}")
            raise StoreException(f"Failed to read call record: {str(e)}")

    async def query(
        self,
        filters: RecordQuery,
        limit: int = 10,
        newest_first: bool = True,
    ) -> List[CallRecord]:
        order = CallRecordRow.created_at.desc() if newest_first else CallRecordRow.created_at.asc()
        try:
            async with await self.get_session() as session:
                stmt = (
                    select(CallRecordRow)
                    .where(*_query_clauses(filters))
                    .order_by(order)
                    .limit(limit)
                )
                result = await session.execute(stmt)
                return [row.to_record() for row in result.scalars().all()]

        except SQLAlchemyError as e:
            logger.error(f"Database error querying calls: {e}")
            raise StoreException(f"Failed to query call records: {str(e)}")

    async def subscribe(self, filters: RecordQuery) -> AsyncIterator[ChangeEvent]:
        if not self.change_feed:
            logger.warning("No change feed configured; relying on polling only")
            return
        async for event in self.change_feed.subscribe(filters):
            yield event
