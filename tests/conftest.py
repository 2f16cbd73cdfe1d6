"""
Pytest configuration and fixtures for family call coordinator tests.
"""

import asyncio
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from family_calls.config import Settings
from family_calls.models.call_record import Role
from family_calls.models.call_state import SessionIdentity
from family_calls.services.call_session import CallSession
from family_calls.services.media_adapter import MediaTransportAdapter, PeerConnectionHandle
from family_calls.services.memory_store import InMemoryCallRecordStore, sequential_ids
from family_calls.services.notification_bridge import LoggingNotificationBridge
from family_calls.services.signaling_channel import SignalingChannel
from family_calls.utils.exceptions import MediaAcquisitionError, RemoteDescriptionError


class FakePeerConnection(PeerConnectionHandle):
    """
    Scripted peer connection.

    Emits a few host candidates after each local description, and reports
    "connected" plus a remote track once it has a remote description and
    has applied at least one remote candidate.
    """

    def __init__(self, name: str, ice_servers: List[Dict[str, Any]], candidate_count: int = 2):
        self.name = name
        self.ice_servers = ice_servers
        self.candidate_count = candidate_count
        self.local_description: Optional[Dict[str, Any]] = None
        self.remote_description: Optional[Dict[str, Any]] = None
        self.added_candidates: List[Dict[str, Any]] = []
        self.close_calls = 0
        self.closed = False
        self.connected = False
        self.reject_remote_description = False

    def _candidate(self, index: int) -> Dict[str, Any]:
        return {
            "candidate": f"candidate:{self.name}{index} 1 udp 2122260223 10.0.0.{index + 1} 5000{index} typ host",
            "sdpMLineIndex": 0,
            "sdpMid": "0",
        }

    def _gather(self) -> None:
        loop = asyncio.get_running_loop()
        for index in range(self.candidate_count):
            loop.call_soon(self._emit_candidate, self._candidate(index))
        loop.call_soon(self._emit_candidate, None)

    def _emit_candidate(self, candidate) -> None:
        if not self.closed and self.on_ice_candidate:
            self.on_ice_candidate(candidate)

    def emit_state(self, state: str) -> None:
        if self.on_connection_state_change:
            self.on_connection_state_change(state)

    def _emit_connected(self) -> None:
        if self.closed:
            return
        self.emit_state("connected")
        if self.on_track:
            self.on_track(f"track-{self.name}")

    async def create_offer(self) -> Dict[str, Any]:
        self.local_description = {"type": "offer", "sdp": f"v=0 offer {self.name}"}
        self._gather()
        return self.local_description

    async def create_answer(self) -> Dict[str, Any]:
        if self.remote_description is None:
            raise RemoteDescriptionError("answer requested before the offer was applied")
        self.local_description = {"type": "answer", "sdp": f"v=0 answer {self.name}"}
        self._gather()
        return self.local_description

    async def set_remote_description(self, description: Dict[str, Any]) -> None:
        if self.reject_remote_description:
            raise RemoteDescriptionError("unsupported codec")
        self.remote_description = description

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        if self.remote_description is None:
            raise RuntimeError("candidate applied before the remote description")
        self.added_candidates.append(candidate)
        if not self.connected:
            self.connected = True
            asyncio.get_running_loop().call_soon(self._emit_connected)

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class FakeMediaAdapter(MediaTransportAdapter):
    """Media adapter with configurable acquisition delay and failure."""

    def __init__(self, name: str, acquire_delay: float = 0.0, fail_acquire: bool = False):
        self.name = name
        self.acquire_delay = acquire_delay
        self.fail_acquire = fail_acquire
        self.acquired: List[str] = []
        self.released: List[str] = []
        self.peer_connections: List[FakePeerConnection] = []

    async def acquire_local_media(self) -> str:
        if self.acquire_delay:
            await asyncio.sleep(self.acquire_delay)
        if self.fail_acquire:
            raise MediaAcquisitionError("camera permission denied")
        stream = f"stream-{self.name}-{len(self.acquired) + 1}"
        self.acquired.append(stream)
        return stream

    async def release_local_media(self, stream: str) -> None:
        self.released.append(stream)

    async def create_peer_connection(self, ice_servers, local_media) -> FakePeerConnection:
        pc = FakePeerConnection(f"{self.name}-pc{len(self.peer_connections) + 1}-", ice_servers)
        self.peer_connections.append(pc)
        return pc

    @property
    def pc(self) -> Optional[FakePeerConnection]:
        return self.peer_connections[-1] if self.peer_connections else None

    @property
    def live_streams(self) -> List[str]:
        return [s for s in self.acquired if s not in self.released]


def make_settings(**overrides) -> Settings:
    """Settings with timers short enough for tests."""
    values = dict(
        ring_timeout_seconds=5.0,
        connect_timeout_seconds=5.0,
        disconnect_grace_seconds=0.2,
        poll_interval_seconds=0.05,
        poll_lookback_seconds=30.0,
        poll_batch_limit=5,
        active_poll_interval_seconds=0.05,
        write_retry_attempts=3,
        write_retry_base_delay_seconds=0.01,
        busy_check_enabled=True,
        busy_window_seconds=120.0,
        database_url=None,
        redis_url=None,
        notification_webhook_url=None,
        log_level="DEBUG",
        log_format="text",
        environment="development",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def test_settings():
    """Settings for testing."""
    return make_settings()


@pytest.fixture
def settings_factory():
    """Build settings with specific overrides."""
    return make_settings


@pytest.fixture
def memory_store():
    """Shared in-memory store with ids "1", "2", ..."""
    return InMemoryCallRecordStore(id_factory=sequential_ids())


@pytest.fixture
def parent_identity():
    return SessionIdentity(profile_id="parent-1", role=Role.PARENT, display_name="Mom")


@pytest.fixture
def child_identity():
    return SessionIdentity(profile_id="child-1", role=Role.CHILD, display_name="Mia")


@pytest.fixture
def media_factory():
    return FakeMediaAdapter


@pytest.fixture
async def make_device(memory_store, test_settings):
    """
    Factory for a started device: media, notifier, channel and session.

    All devices share the memory_store fixture unless a store is given.
    """
    devices = []

    async def _make(identity, settings=None, store=None, start_channel=True, **media_kwargs):
        settings = settings or test_settings
        store = store or memory_store
        media = FakeMediaAdapter(identity.profile_id, **media_kwargs)
        notifier = LoggingNotificationBridge()
        channel = SignalingChannel(store, identity, settings)
        session = CallSession(identity, store, channel, media, notifier, settings)
        await session.start()
        if start_channel:
            await channel.start()
        device = SimpleNamespace(
            identity=identity,
            media=media,
            notifier=notifier,
            channel=channel,
            session=session,
            store=store,
        )
        devices.append(device)
        return device

    yield _make

    for device in devices:
        await device.session.stop()
        await device.channel.stop()


@pytest.fixture
def settle():
    """Let loops, timers and queued events run until things quiet down."""

    async def _settle(*devices, rounds: int = 8, delay: float = 0.02):
        for _ in range(rounds):
            await asyncio.sleep(delay)
            for device in devices:
                session = getattr(device, "session", device)
                await session.drain()

    return _settle
