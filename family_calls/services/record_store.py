"""
Call Record Store interface.

The store is the only shared mutable resource between the two devices.
Implementations must make each conditional write and each candidate append
atomic; change notifications are best-effort and may drop or duplicate.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from family_calls.models.call_record import CallRecord, CallStatus, Party


class UpdateResult(str, Enum):
    """Outcome of a conditional write."""
    SUCCESS = "success"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class WriteCondition:
    """
    Preconditions evaluated atomically with a write.

    All given clauses must hold; an absent record never matches.
    """
    status_in: Tuple[CallStatus, ...] = ()
    status_not_in: Tuple[CallStatus, ...] = ()
    fields_null: Tuple[str, ...] = ()
    fields_present: Tuple[str, ...] = ()

    def holds_for(self, record: CallRecord) -> bool:
        if self.status_in and record.status not in self.status_in:
            return False
        if self.status_not_in and record.status in self.status_not_in:
            return False
        for name in self.fields_null:
            if getattr(record, name) is not None:
                return False
        for name in self.fields_present:
            if getattr(record, name) is None:
                return False
        return True


NOT_ENDED = WriteCondition(status_not_in=(CallStatus.ENDED,))


@dataclass(frozen=True)
class RecordQuery:
    """Filter shared by query() and subscribe()."""
    participant_id: Optional[str] = None
    caller_id: Optional[str] = None
    callee_id: Optional[str] = None
    status: Optional[CallStatus] = None
    created_after: Optional[datetime] = None

    def matches(self, record: CallRecord) -> bool:
        if self.participant_id is not None and not record.involves(self.participant_id):
            return False
        if self.caller_id is not None and record.caller_id != self.caller_id:
            return False
        if self.callee_id is not None and record.callee_id != self.callee_id:
            return False
        if self.status is not None and record.status != self.status:
            return False
        if self.created_after is not None:
            if record.created_at is None or record.created_at < self.created_after:
                return False
        return True


class ChangeEvent(BaseModel):
    """Change notification delivered by a push feed."""
    kind: str  # "insert" or "update"
    record: CallRecord


class CallRecordStore(ABC):
    """Persistence and change-notification contract for call records."""

    @abstractmethod
    async def create(self, record: CallRecord) -> str:
        """
        Persist a new record.

        Assigns id and created_at when absent.

        Returns:
            The record id

        Raises:
            StoreException: On transport failure
        """

    @abstractmethod
    async def update(
        self,
        call_id: str,
        patch: Dict[str, Any],
        condition: Optional[WriteCondition] = None,
    ) -> UpdateResult:
        """
        Apply a patch if the condition holds.

        Args:
            call_id: Record id
            patch: Field name -> new value
            condition: Preconditions checked atomically with the write

        Returns:
            SUCCESS, or CONFLICT when the record is absent or the condition failed
        """

    @abstractmethod
    async def append_candidates(
        self,
        call_id: str,
        party: Party,
        candidates: Iterable[Dict[str, Any]],
    ) -> UpdateResult:
        """Append to the party's candidate list, preserving order."""

    @abstractmethod
    async def get(self, call_id: str) -> Optional[CallRecord]:
        """Point read; None when absent."""

    @abstractmethod
    async def query(
        self,
        filters: RecordQuery,
        limit: int = 10,
        newest_first: bool = True,
    ) -> List[CallRecord]:
        """Ordinary polling read ordered by created_at."""

    @abstractmethod
    def subscribe(self, filters: RecordQuery) -> AsyncIterator[ChangeEvent]:
        """Best-effort change feed; may drop or duplicate events."""

    async def close(self) -> None:
        """Release backend resources."""
