"""
Integration tests: two devices coordinating through one shared store.
"""

import asyncio
from datetime import timedelta

import pytest

from family_calls.models.call_record import CallRecord, CallStatus, EndReason, Role, utcnow
from family_calls.models.call_state import CallState
from family_calls.services.database_store import SqlCallRecordStore
from family_calls.services.record_store import RecordQuery
from family_calls.utils.exceptions import MediaAcquisitionError


@pytest.fixture
async def parent(make_device, parent_identity):
    return await make_device(parent_identity)


@pytest.fixture
async def child(make_device, child_identity):
    return await make_device(child_identity)


def _ended_writes(store, call_id):
    return [e for e in store.write_log if e[1] == call_id and e[2] == CallStatus.ENDED]


@pytest.mark.asyncio
async def test_parent_calls_child(parent, child, memory_store, settle):
    call_id = await parent.session.start_outgoing_call("child-1")
    await settle(parent, child)

    assert child.session.state == CallState.INCOMING_RINGING
    assert [n.event for n in child.notifier.delivered] == ["incoming"]

    assert await child.session.accept_incoming_call(call_id) is True
    await settle(parent, child, rounds=15)

    assert parent.session.state == CallState.IN_CALL
    assert child.session.state == CallState.IN_CALL
    assert parent.session.remote_track == "track-parent-1-pc1-"
    assert child.session.remote_track == "track-child-1-pc1-"
    assert (await memory_store.get(call_id)).status == CallStatus.ACTIVE

    await child.session.end_call()
    await settle(parent, child)

    record = await memory_store.get(call_id)
    assert record.status == CallStatus.ENDED
    assert record.end_reason == "hangup"
    assert parent.session.state == CallState.ENDED
    assert parent.media.live_streams == []
    assert child.media.live_streams == []


@pytest.mark.asyncio
async def test_simultaneous_dial_resolves_to_one_call(parent, child, memory_store, settle):
    parent_call, child_call = await asyncio.gather(
        parent.session.start_outgoing_call("child-1"),
        child.session.start_outgoing_call("parent-1"),
    )
    await settle(parent, child, rounds=12)

    assert (parent_call, child_call) == ("1", "2")
    loser = await memory_store.get("2")
    assert loser.status == CallStatus.ENDED
    assert loser.end_reason == "glare_lost"
    assert (await memory_store.get("1")).status == CallStatus.RINGING

    assert parent.session.call_id == child.session.call_id == "1"
    assert parent.session.state == CallState.OUTGOING_RINGING
    assert child.session.state == CallState.INCOMING_RINGING
    assert child.media.live_streams == []

    assert await child.session.accept_incoming_call("1") is True
    await settle(parent, child, rounds=15)

    assert parent.session.state == CallState.IN_CALL
    assert child.session.state == CallState.IN_CALL


@pytest.mark.asyncio
async def test_ring_during_own_dial_is_resolved_after_create(
    make_device, parent_identity, child_identity, memory_store, settle
):
    parent = await make_device(parent_identity)
    child = await make_device(child_identity, acquire_delay=0.05)

    child_dial = asyncio.create_task(child.session.start_outgoing_call("parent-1"))
    await asyncio.sleep(0.01)
    assert await parent.session.start_outgoing_call("child-1") == "1"
    assert await child_dial == "2"
    await settle(parent, child, rounds=12)

    assert (await memory_store.get("2")).end_reason == "glare_lost"
    assert child.session.state == CallState.INCOMING_RINGING
    assert child.session.call_id == "1"
    assert parent.session.state == CallState.OUTGOING_RINGING


@pytest.mark.asyncio
async def test_ring_parked_during_cancelled_dial_still_rings(
    make_device, parent_identity, child_identity, memory_store, settle
):
    parent = await make_device(parent_identity)
    child = await make_device(child_identity, acquire_delay=0.2)

    child_dial = asyncio.create_task(child.session.start_outgoing_call("parent-1"))
    await asyncio.sleep(0.01)
    call_id = await parent.session.start_outgoing_call("child-1")
    await settle(parent, child, rounds=2)
    assert child.session.dialing

    await child.session.end_call()
    await settle(parent, child)

    assert child.session.state == CallState.INCOMING_RINGING
    assert child.session.call_id == call_id
    assert (await memory_store.get(call_id)).status == CallStatus.RINGING

    assert await child_dial is None
    assert child.media.live_streams == []
    assert len(await memory_store.query(RecordQuery(), limit=10)) == 1


@pytest.mark.asyncio
async def test_ring_parked_during_failed_dial_still_rings(
    make_device, parent_identity, child_identity, memory_store, settle
):
    parent = await make_device(parent_identity)
    child = await make_device(child_identity, acquire_delay=0.1, fail_acquire=True)

    child_dial = asyncio.create_task(child.session.start_outgoing_call("parent-1"))
    await asyncio.sleep(0.01)
    call_id = await parent.session.start_outgoing_call("child-1")

    with pytest.raises(MediaAcquisitionError):
        await child_dial
    await settle(parent, child)

    assert child.session.state == CallState.INCOMING_RINGING
    assert child.session.call_id == call_id
    assert [n.event for n in child.notifier.delivered] == ["incoming"]


@pytest.mark.asyncio
async def test_decline_while_accepting_loses(make_device, parent_identity, child_identity, memory_store, settle):
    parent = await make_device(parent_identity)
    child = await make_device(child_identity, acquire_delay=0.05)
    call_id = await parent.session.start_outgoing_call("child-1")
    await settle(parent, child)

    accepting = asyncio.create_task(child.session.accept_incoming_call(call_id))
    await asyncio.sleep(0.01)
    assert child.session.accepting

    assert await child.session.reject_incoming_call(call_id) is False
    await child.session.end_call(EndReason.DECLINED)
    assert await accepting is True
    await settle(parent, child, rounds=15)

    assert parent.session.state == CallState.IN_CALL
    assert child.session.state == CallState.IN_CALL
    assert _ended_writes(memory_store, call_id) == []


@pytest.mark.asyncio
async def test_missed_push_recovered_by_polling(make_device, child_identity, settings_factory, memory_store, settle):
    memory_store.drop_predicate = lambda event: True
    settings = settings_factory(ring_timeout_seconds=30.0, poll_lookback_seconds=30.0)
    now = utcnow()
    for age in (45, 10):
        await memory_store.create(
            CallRecord(
                caller_id="parent-1",
                callee_id="child-1",
                caller_role=Role.PARENT,
                callee_role=Role.CHILD,
                offer={"type": "offer", "sdp": "v=0"},
                created_at=now - timedelta(seconds=age),
            )
        )

    child = await make_device(child_identity, settings=settings)
    await settle(child)

    assert child.session.state == CallState.INCOMING_RINGING
    assert child.session.call_id == "2"
    assert [n.call_id for n in child.notifier.delivered] == ["2"]


@pytest.mark.asyncio
async def test_both_hang_up_at_once(parent, child, memory_store, settle):
    call_id = await parent.session.start_outgoing_call("child-1")
    await settle(parent, child)
    await child.session.accept_incoming_call(call_id)
    await settle(parent, child, rounds=15)

    await asyncio.gather(parent.session.end_call(), child.session.end_call())
    await settle(parent, child)

    record = await memory_store.get(call_id)
    assert record.status == CallStatus.ENDED
    assert record.end_reason == "hangup"
    assert len(_ended_writes(memory_store, call_id)) == 1
    assert parent.session.state == CallState.ENDED
    assert child.session.state == CallState.ENDED


@pytest.fixture
async def sql_store(tmp_path):
    store = SqlCallRecordStore(f"sqlite+aiosqlite:///{tmp_path / 'calls.db'}")
    await store.init()
    yield store
    await store.close()


@pytest.mark.asyncio
async def test_call_over_sql_store_with_polling_only(
    sql_store, make_device, parent_identity, child_identity, settings_factory, settle
):
    settings = settings_factory(database_url=sql_store.database_url)
    parent = await make_device(parent_identity, settings=settings, store=sql_store)
    child = await make_device(child_identity, settings=settings, store=sql_store)

    call_id = await parent.session.start_outgoing_call("child-1")
    await settle(parent, child, rounds=15)
    assert child.session.state == CallState.INCOMING_RINGING

    assert await child.session.accept_incoming_call(call_id) is True
    await settle(parent, child, rounds=40)

    assert parent.session.state == CallState.IN_CALL
    assert child.session.state == CallState.IN_CALL
    assert (await sql_store.get(call_id)).status == CallStatus.ACTIVE

    await parent.session.end_call()
    await settle(parent, child, rounds=15)
    assert child.session.state == CallState.ENDED
