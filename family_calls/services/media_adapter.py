"""
Media/Transport adapter contract.

Camera/microphone acquisition and the peer connection itself live outside
this package. The coordinator drives them through these two narrow
interfaces, and this module is the only place that looks inside the
offer/answer/candidate payloads.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from family_calls.utils.exceptions import RemoteDescriptionError

TrackHandler = Callable[[Any], None]
CandidateHandler = Callable[[Optional[Dict[str, Any]]], None]
ConnectionStateHandler = Callable[[str], None]

def validate_description(description: Any, expected_type: str) -> Dict[str, Any]:
    """
    Check an SDP payload before handing it to the peer connection.

    Args:
        description: Payload read from the call record
        expected_type: "offer" or "answer"

    Returns:
        The payload unchanged

    Raises:
        RemoteDescriptionError: If the payload is malformed or of the wrong type
    """
    if not isinstance(description, dict):
        raise RemoteDescriptionError(f"{expected_type} is not an object")
    if description.get("type") != expected_type:
        raise RemoteDescriptionError(
            f"expected {expected_type}, got {description.get('type')!r}"
        )
    if not isinstance(description.get("sdp"), str) or not description["sdp"]:
        raise RemoteDescriptionError(f"{expected_type} has no sdp")
    return description


def candidate_key(candidate: Dict[str, Any]) -> str:
    """Identity of a candidate, used to drop locally re-emitted duplicates."""
    if "candidate" in candidate:
        return f"{candidate.get('candidate')}-{candidate.get('sdpMLineIndex')}-{candidate.get('sdpMid') or ''}"
    return json.dumps(candidate, sort_keys=True)


class PeerConnectionHandle(ABC):
    """
    Wrapper around one peer connection.

    The coordinator assigns the three callback attributes right after
    creation; the adapter invokes them from the event loop.
    """

    on_track: Optional[TrackHandler] = None
    on_ice_candidate: Optional[CandidateHandler] = None
    on_connection_state_change: Optional[ConnectionStateHandler] = None

    @abstractmethod
    async def create_offer(self) -> Dict[str, Any]:
        """Create an offer and set it as local description."""

    @abstractmethod
    async def create_answer(self) -> Dict[str, Any]:
        """Create an answer and set it as local description."""

    @abstractmethod
    async def set_remote_description(self, description: Dict[str, Any]) -> None:
        """Apply the remote description; raises RemoteDescriptionError."""

    @abstractmethod
    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        """Apply one remote candidate."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Must be safe to call more than once."""


class MediaTransportAdapter(ABC):
    """Local media acquisition and peer connection factory."""

    @abstractmethod
    async def acquire_local_media(self) -> Any:
        """
        Acquire camera and microphone.

        Raises:
            MediaAcquisitionError: If access is denied or no device is available
        """

    @abstractmethod
    async def release_local_media(self, stream: Any) -> None:
        """Stop all tracks of a stream returned by acquire_local_media."""

    @abstractmethod
    async def create_peer_connection(
        self,
        ice_servers: List[Dict[str, Any]],
        local_media: Any,
    ) -> PeerConnectionHandle:
        """Create a peer connection carrying the local media."""
