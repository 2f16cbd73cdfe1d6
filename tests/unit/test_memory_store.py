"""
Unit tests for the in-memory call record store.
"""

import asyncio
from datetime import timedelta

import pytest

from family_calls.models.call_record import CallRecord, CallStatus, Party, Role, utcnow
from family_calls.services.record_store import NOT_ENDED, RecordQuery, UpdateResult
from family_calls.utils.exceptions import StoreException


def _ringing(caller="parent-1", callee="child-1", **kwargs) -> CallRecord:
    return CallRecord(
        caller_id=caller,
        callee_id=callee,
        caller_role=Role.PARENT,
        callee_role=Role.CHILD,
        offer={"type": "offer", "sdp": "v=0"},
        **kwargs,
    )


async def _next_event(iterator, timeout=0.5):
    return await asyncio.wait_for(iterator.__anext__(), timeout)


@pytest.mark.asyncio
async def test_create_assigns_id_and_timestamp(memory_store):
    call_id = await memory_store.create(_ringing())

    record = await memory_store.get(call_id)
    assert call_id == "1"
    assert record.created_at is not None
    assert record.status == CallStatus.RINGING


@pytest.mark.asyncio
async def test_get_returns_a_copy(memory_store):
    call_id = await memory_store.create(_ringing())

    record = await memory_store.get(call_id)
    record.caller_candidates.append({"candidate": "x"})

    assert (await memory_store.get(call_id)).caller_candidates == []


@pytest.mark.asyncio
async def test_conditional_update(memory_store):
    call_id = await memory_store.create(_ringing())

    assert await memory_store.update(call_id, {"status": CallStatus.ENDED}, NOT_ENDED) == UpdateResult.SUCCESS
    assert await memory_store.update(call_id, {"status": CallStatus.ENDED}, NOT_ENDED) == UpdateResult.CONFLICT
    assert await memory_store.update("missing", {"status": CallStatus.ENDED}) == UpdateResult.CONFLICT


@pytest.mark.asyncio
async def test_append_candidates_preserves_order(memory_store):
    call_id = await memory_store.create(_ringing())

    await memory_store.append_candidates(call_id, Party.CALLER, [{"candidate": "a"}, {"candidate": "b"}])
    await memory_store.append_candidates(call_id, Party.CALLER, [{"candidate": "c"}])
    await memory_store.append_candidates(call_id, Party.CALLEE, [{"candidate": "z"}])

    record = await memory_store.get(call_id)
    assert [c["candidate"] for c in record.caller_candidates] == ["a", "b", "c"]
    assert [c["candidate"] for c in record.callee_candidates] == ["z"]


@pytest.mark.asyncio
async def test_query_filters_and_orders(memory_store):
    now = utcnow()
    await memory_store.create(_ringing(created_at=now - timedelta(seconds=50)))
    await memory_store.create(_ringing(created_at=now - timedelta(seconds=10)))
    await memory_store.create(_ringing(created_at=now - timedelta(seconds=5), callee="child-2"))

    recent = await memory_store.query(
        RecordQuery(callee_id="child-1", created_after=now - timedelta(seconds=30))
    )
    assert [r.id for r in recent] == ["2"]

    everything = await memory_store.query(RecordQuery(caller_id="parent-1"), newest_first=False)
    assert [r.id for r in everything] == ["1", "2", "3"]

    newest = await memory_store.query(RecordQuery(caller_id="parent-1"), limit=1)
    assert [r.id for r in newest] == ["3"]


@pytest.mark.asyncio
async def test_subscribe_receives_matching_changes(memory_store):
    events = memory_store.subscribe(RecordQuery(participant_id="child-1"))
    pending = asyncio.ensure_future(_next_event(events))
    await asyncio.sleep(0.01)

    await memory_store.create(_ringing(callee="child-2"))
    call_id = await memory_store.create(_ringing())

    event = await pending
    assert event.kind == "insert"
    assert event.record.id == call_id
    await events.aclose()
    assert memory_store.subscriber_count == 0


@pytest.mark.asyncio
async def test_fault_injection(memory_store):
    events = memory_store.subscribe(RecordQuery(participant_id="child-1"))
    first = asyncio.ensure_future(_next_event(events))
    await asyncio.sleep(0.01)

    memory_store.drop_predicate = lambda event: event.kind == "insert"
    memory_store.duplicate_events = True
    call_id = await memory_store.create(_ringing())
    await memory_store.update(call_id, {"status": CallStatus.ENDED})

    assert (await first).kind == "update"
    assert (await _next_event(events)).kind == "update"
    await events.aclose()

    memory_store.fail_writes = 1
    with pytest.raises(StoreException):
        await memory_store.create(_ringing())
