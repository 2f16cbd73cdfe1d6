"""
Shared call record model.

One record per call attempt, owned jointly by caller and callee. It is the
only signaling transport between the two devices.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in call records."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Role(str, Enum):
    """Family role of a profile."""
    PARENT = "parent"
    CHILD = "child"
    FAMILY_MEMBER = "family_member"


class CallStatus(str, Enum):
    """Record status. Moves forward only: ringing -> active -> ended."""
    RINGING = "ringing"
    ACTIVE = "active"
    ENDED = "ended"


STATUS_RANK = {
    CallStatus.RINGING: 0,
    CallStatus.ACTIVE: 1,
    CallStatus.ENDED: 2,
}


class Party(str, Enum):
    """Side of a call record."""
    CALLER = "caller"
    CALLEE = "callee"

    @property
    def other(self) -> "Party":
        return Party.CALLEE if self is Party.CALLER else Party.CALLER


class EndReason(str, Enum):
    """Reason persisted once, at termination."""
    HANGUP = "hangup"
    DECLINED = "declined"
    TIMEOUT = "timeout"
    GLARE_LOST = "glare_lost"
    BUSY = "busy"
    MEDIA_FAILED = "media_failed"
    SIGNALING_FAILED = "signaling_failed"
    NEGOTIATION_FAILED = "negotiation_failed"
    CONNECTION_FAILED = "connection_failed"


CANDIDATE_FIELDS = {
    Party.CALLER: "caller_candidates",
    Party.CALLEE: "callee_candidates",
}


class CallRecord(BaseModel):
    """
    Persisted call attempt.

    offer/answer/candidates are opaque payloads at this layer; only the
    media adapter looks inside them.
    """
    id: Optional[str] = Field(None, description="Record id, assigned by the store on create")
    caller_id: str = Field(..., description="Profile id of the caller")
    callee_id: str = Field(..., description="Profile id of the callee")
    caller_role: Role = Field(..., description="Role of the initiating profile")
    callee_role: Role = Field(..., description="Role of the called profile")
    status: CallStatus = Field(default=CallStatus.RINGING)

    offer: Optional[Dict[str, Any]] = Field(None, description="Caller session description")
    answer: Optional[Dict[str, Any]] = Field(None, description="Callee session description")
    caller_candidates: List[Dict[str, Any]] = Field(default_factory=list)
    callee_candidates: List[Dict[str, Any]] = Field(default_factory=list)

    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    ended_by: Optional[Party] = None
    end_reason: Optional[str] = None

    @property
    def is_ended(self) -> bool:
        return self.status == CallStatus.ENDED

    def party_of(self, profile_id: str) -> Optional[Party]:
        """Which side of this record the profile is on, if any."""
        if profile_id == self.caller_id:
            return Party.CALLER
        if profile_id == self.callee_id:
            return Party.CALLEE
        return None

    def counterpart_of(self, profile_id: str) -> Optional[str]:
        party = self.party_of(profile_id)
        if party is Party.CALLER:
            return self.callee_id
        if party is Party.CALLEE:
            return self.caller_id
        return None

    def candidates_of(self, party: Party) -> List[Dict[str, Any]]:
        return getattr(self, CANDIDATE_FIELDS[party])

    def involves(self, profile_id: str) -> bool:
        return self.party_of(profile_id) is not None
