"""
Unit tests for the ICE candidate buffer.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from family_calls.services.ice_buffer import IceCandidateBuffer
from family_calls.utils.exceptions import SignalingWriteError


def _candidate(n: int) -> dict:
    return {"candidate": f"candidate:{n} 1 udp 1 10.0.0.{n} 5000 typ host", "sdpMLineIndex": 0, "sdpMid": "0"}


@pytest.fixture
def published():
    return []


@pytest.fixture
def applied():
    return []


@pytest.fixture
def buffer(published, applied):
    async def publish(batch):
        published.extend(batch)

    async def apply(candidate):
        applied.append(candidate)

    return IceCandidateBuffer(publish_local=publish, apply_remote=apply, label="test")


@pytest.mark.asyncio
async def test_local_candidates_wait_for_remote_description(buffer, published):
    await buffer.add_local(_candidate(1))
    await buffer.add_local(_candidate(2))
    assert published == []
    assert buffer.pending_local == 2

    await buffer.remote_description_applied()
    assert published == [_candidate(1), _candidate(2)]

    await buffer.add_local(_candidate(3))
    assert published == [_candidate(1), _candidate(2), _candidate(3)]


@pytest.mark.asyncio
async def test_duplicate_and_end_of_gathering_ignored(buffer, published):
    await buffer.remote_description_applied()
    await buffer.add_local(_candidate(1))
    await buffer.add_local(dict(_candidate(1)))
    await buffer.add_local(None)
    assert published == [_candidate(1)]


@pytest.mark.asyncio
async def test_remote_candidates_applied_once_across_reobservation(buffer, applied):
    await buffer.observe_remote([_candidate(1)])
    await buffer.observe_remote([_candidate(1), _candidate(2)])
    assert applied == []

    await buffer.remote_description_applied()
    assert applied == [_candidate(1), _candidate(2)]

    # Same list again, then a longer one
    await buffer.observe_remote([_candidate(1), _candidate(2)])
    await buffer.observe_remote([_candidate(1), _candidate(2), _candidate(3)])
    assert applied == [_candidate(1), _candidate(2), _candidate(3)]
    assert buffer.remote_cursor == 3


@pytest.mark.asyncio
async def test_shorter_snapshot_ignored(buffer, applied):
    await buffer.remote_description_applied()
    await buffer.observe_remote([_candidate(1), _candidate(2)])
    assert await buffer.observe_remote([_candidate(1)]) == 0
    assert applied == [_candidate(1), _candidate(2)]


@pytest.mark.asyncio
async def test_concurrent_flushes_apply_exactly_once(applied):
    async def slow_apply(candidate):
        await asyncio.sleep(0)
        applied.append(candidate)

    buffer = IceCandidateBuffer(publish_local=AsyncMock(), apply_remote=slow_apply)
    await buffer.observe_remote([_candidate(n) for n in range(5)])

    await asyncio.gather(
        buffer.remote_description_applied(),
        buffer.flush(),
        buffer.observe_remote([_candidate(n) for n in range(6)]),
    )
    assert applied == [_candidate(n) for n in range(6)]


@pytest.mark.asyncio
async def test_publish_failure_keeps_batch_queued(published):
    attempts = {"count": 0}

    async def flaky_publish(batch):
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise SignalingWriteError("store unreachable")
        published.extend(batch)

    buffer = IceCandidateBuffer(publish_local=flaky_publish, apply_remote=AsyncMock())
    await buffer.add_local(_candidate(1))
    await buffer.add_local(_candidate(2))

    with pytest.raises(SignalingWriteError):
        await buffer.remote_description_applied()
    assert buffer.pending_local == 2

    await buffer.flush()
    assert published == [_candidate(1), _candidate(2)]


@pytest.mark.asyncio
async def test_failed_remote_candidate_does_not_block_the_rest(published):
    applied = []

    async def apply(candidate):
        if candidate == _candidate(1):
            raise ValueError("bad candidate")
        applied.append(candidate)

    buffer = IceCandidateBuffer(publish_local=AsyncMock(), apply_remote=apply)
    await buffer.remote_description_applied()
    await buffer.observe_remote([_candidate(1), _candidate(2)])
    assert applied == [_candidate(2)]
    assert buffer.failed_count == 1


@pytest.mark.asyncio
async def test_closed_buffer_ignores_everything(buffer, published, applied):
    buffer.close()
    await buffer.add_local(_candidate(1))
    await buffer.observe_remote([_candidate(2)])
    await buffer.remote_description_applied()
    assert published == []
    assert applied == []
