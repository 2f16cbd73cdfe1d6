"""
In-process Call Record Store.

Used for local development and tests. Both devices of a test share one
instance, so it also carries fault injection for the push feed.
"""

import asyncio
import itertools
import logging
import uuid
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

from family_calls.models.call_record import CallRecord, Party, CANDIDATE_FIELDS, utcnow
from family_calls.services.record_store import (
    CallRecordStore,
    ChangeEvent,
    RecordQuery,
    UpdateResult,
    WriteCondition,
)
from family_calls.utils.exceptions import StoreException

logger = logging.getLogger(__name__)


def sequential_ids(start: int = 1) -> Callable[[], str]:
    """Id factory producing "1", "2", ... for deterministic tests."""
    counter = itertools.count(start)
    return lambda: str(next(counter))


class InMemoryCallRecordStore(CallRecordStore):
    """
    Dict-backed store with a fan-out change feed.

    Writes are atomic because nothing awaits between the condition check and
    the mutation.
    """

    def __init__(
        self,
        id_factory: Optional[Callable[[], str]] = None,
        clock: Callable = utcnow,
    ):
        self._records: Dict[str, CallRecord] = {}
        self._subscribers: List[tuple] = []
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._clock = clock

        # Fault injection
        self.drop_predicate: Optional[Callable[[ChangeEvent], bool]] = None
        self.duplicate_events = False
        self.fail_writes = 0
        self.write_log: List[tuple] = []

    # Helpers

    def _check_fault(self, operation: str) -> None:
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise StoreException(f"injected failure during {operation}")

    def _publish(self, kind: str, record: CallRecord) -> None:
        event = ChangeEvent(kind=kind, record=record.model_copy(deep=True))
        if self.drop_predicate and self.drop_predicate(event):
            logger.debug(f"Dropping {kind} notification for {record.id}")
            return
        copies = 2 if self.duplicate_events else 1
        for queue, filters in list(self._subscribers):
            if filters.matches(event.record):
                for _ in range(copies):
                    queue.put_nowait(event)

    def inject_event(self, event: ChangeEvent) -> None:
        """Deliver an arbitrary (possibly stale) event to subscribers."""
        for queue, filters in list(self._subscribers):
            if filters.matches(event.record):
                queue.put_nowait(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # CallRecordStore

    async def create(self, record: CallRecord) -> str:
        self._check_fault("create")
        stored = record.model_copy(deep=True)
        if stored.id is None:
            stored.id = self._id_factory()
        if stored.created_at is None:
            stored.created_at = self._clock()
        if stored.id in self._records:
            raise StoreException(f"duplicate call id {stored.id}")

        self._records[stored.id] = stored
        self.write_log.append(("create", stored.id, stored.status))
        self._publish("insert", stored)
        return stored.id

    async def update(
        self,
        call_id: str,
        patch: Dict[str, Any],
        condition: Optional[WriteCondition] = None,
    ) -> UpdateResult:
        self._check_fault("update")
        current = self._records.get(call_id)
        if current is None:
            return UpdateResult.CONFLICT
        if condition is not None and not condition.holds_for(current):
            return UpdateResult.CONFLICT

        updated = CallRecord.model_validate({**current.model_dump(), **patch})
        self._records[call_id] = updated
        self.write_log.append(("update", call_id, updated.status))
        self._publish("update", updated)
        return UpdateResult.SUCCESS

    async def append_candidates(
        self,
        call_id: str,
        party: Party,
        candidates: Iterable[Dict[str, Any]],
    ) -> UpdateResult:
        self._check_fault("append_candidates")
        current = self._records.get(call_id)
        if current is None:
            return UpdateResult.CONFLICT

        field_name = CANDIDATE_FIELDS[party]
        getattr(current, field_name).extend(dict(c) for c in candidates)
        self._publish("update", current)
        return UpdateResult.SUCCESS

    async def get(self, call_id: str) -> Optional[CallRecord]:
        record = self._records.get(call_id)
        return record.model_copy(deep=True) if record else None

    async def query(
        self,
        filters: RecordQuery,
        limit: int = 10,
        newest_first: bool = True,
    ) -> List[CallRecord]:
        matches = [r for r in self._records.values() if filters.matches(r)]
        matches.sort(key=lambda r: r.created_at, reverse=newest_first)
        return [r.model_copy(deep=True) for r in matches[:limit]]

    async def subscribe(self, filters: RecordQuery) -> AsyncIterator[ChangeEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        entry = (queue, filters)
        self._subscribers.append(entry)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(entry)
