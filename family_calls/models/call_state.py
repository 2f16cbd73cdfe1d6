"""
Device-side call session models.

States of the per-device coordinator, the identity it runs as, and the
events it hands to the notification bridge.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from family_calls.models.call_record import Role, utcnow


class CallState(str, Enum):
    """Coordinator state. ENDED and FAILED are terminal."""
    IDLE = "idle"
    OUTGOING_RINGING = "outgoing_ringing"
    INCOMING_RINGING = "incoming_ringing"
    CONNECTING = "connecting"
    IN_CALL = "in_call"
    ENDED = "ended"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CallState.ENDED, CallState.FAILED)


DEFAULT_COUNTERPART_ROLE = {
    Role.CHILD: Role.PARENT,
    Role.PARENT: Role.CHILD,
    Role.FAMILY_MEMBER: Role.CHILD,
}


@dataclass(frozen=True)
class SessionIdentity:
    """
    Stable (id, role) pair for one device session.

    Supplied by the identity provider; this package does no authentication.
    """
    profile_id: str
    role: Role
    display_name: Optional[str] = None

    def __post_init__(self):
        if not self.profile_id:
            raise ValueError("Profile ID cannot be empty")

    @property
    def default_counterpart_role(self) -> Role:
        return DEFAULT_COUNTERPART_ROLE[self.role]


@dataclass
class CounterpartInfo:
    """Latest known counterpart details, read when a notification fires."""
    profile_id: str
    display_name: Optional[str] = None


@dataclass(frozen=True)
class IncomingContext:
    """What the UI knows about a ring it is about to surface."""
    call_id: str
    caller_id: str
    callee_id: Optional[str] = None


class CallNotification(BaseModel):
    """Event handed to the notification bridge."""
    event: str = Field(..., description="incoming, answered or ended")
    call_id: str = Field(..., description="Call record id")
    counterpart_id: str = Field(..., description="Profile id of the other party")
    counterpart_name: Optional[str] = Field(None, description="Display name, if known")
    end_reason: Optional[str] = Field(None, description="Set for ended events")
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = {
        "json_schema_extra": {
            "example": {
                "event": "incoming",
                "call_id": "5f0c6a1e-3a63-4d4e-9d1f-5b7f4a8f5a21",
                "counterpart_id": "child-42",
                "counterpart_name": "Mia",
                "end_reason": None,
                "timestamp": "2025-12-10T12:00:00",
            }
        }
    }
