"""
Database models for the SQL-backed Call Record Store.

SQLAlchemy ORM models with async support.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import String, DateTime, JSON, Index, CheckConstraint
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from family_calls.models.call_record import CallRecord, utcnow


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all database models with async support."""
    pass


class CallRecordRow(Base):
    """
    One row per call attempt.

    Mutated by both participants; never deleted by the coordinator.
    """

    __tablename__ = "calls"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )

    # Participants
    caller_id: Mapped[str] = mapped_column(String(255), nullable=False, comment="Caller profile id")
    callee_id: Mapped[str] = mapped_column(String(255), nullable=False, comment="Callee profile id")
    caller_role: Mapped[str] = mapped_column(String(32), nullable=False)
    callee_role: Mapped[str] = mapped_column(String(32), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ringing")

    # Signaling payloads
    offer: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    answer: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    caller_candidates: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    callee_candidates: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Write-once termination details
    ended_by: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    end_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('ringing', 'active', 'ended')", name="check_call_status"),
        Index('ix_calls_callee_status_created', 'callee_id', 'status', 'created_at'),
        Index('ix_calls_caller_created', 'caller_id', 'created_at'),
    )

    @classmethod
    def from_record(cls, record: CallRecord) -> "CallRecordRow":
        data = record.model_dump(mode="json", exclude_none=True)
        # keep datetimes as datetimes, not ISO strings
        for key in ("created_at", "ended_at"):
            if getattr(record, key) is not None:
                data[key] = getattr(record, key)
        return cls(**data)

    def to_record(self) -> CallRecord:
        return CallRecord(
            id=self.id,
            caller_id=self.caller_id,
            callee_id=self.callee_id,
            caller_role=self.caller_role,
            callee_role=self.callee_role,
            status=self.status,
            offer=self.offer,
            answer=self.answer,
            caller_candidates=list(self.caller_candidates or []),
            callee_candidates=list(self.callee_candidates or []),
            created_at=self.created_at,
            ended_at=self.ended_at,
            ended_by=self.ended_by,
            end_reason=self.end_reason,
        )
