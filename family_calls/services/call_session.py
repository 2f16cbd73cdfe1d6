"""
Call session coordinator.

One CallSession per device session. It owns the call state, turns local
actions into record writes, and turns observed records, peer connection
events and timers into transitions.

Remote, media and timer events are queued and handled one at a time by a
single worker task. Local actions (dial, accept, decline, hang up) run in the
caller's task so that hanging up never waits behind media acquisition. Every
handler and every continuation after a suspension point re-checks the call
generation: ending a call bumps it, and anything carrying an older
generation is discarded as stale.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set, Union

from family_calls.config import Settings, get_settings
from family_calls.models.call_record import (
    CallRecord,
    CallStatus,
    EndReason,
    Party,
    Role,
    utcnow,
)
from family_calls.models.call_state import (
    CallNotification,
    CallState,
    CounterpartInfo,
    IncomingContext,
    SessionIdentity,
)
from family_calls.services.busy_detection import check_if_busy
from family_calls.services.call_timers import CallTimers, TimerKind
from family_calls.services.glare import is_glare, split_glare
from family_calls.services.ice_buffer import IceCandidateBuffer
from family_calls.services.media_adapter import (
    MediaTransportAdapter,
    PeerConnectionHandle,
    validate_description,
)
from family_calls.services.notification_bridge import NotificationBridge
from family_calls.services.record_store import CallRecordStore, UpdateResult, WriteCondition
from family_calls.services.signaling_channel import SignalingChannel
from family_calls.services.termination_guard import TerminationGuard
from family_calls.utils.exceptions import (
    CallServiceException,
    CallStateError,
    CalleeBusyError,
    ConnectionFailure,
    MediaAcquisitionError,
    RemoteDescriptionError,
    SignalingWriteError,
    StaleEventIgnored,
    StoreException,
)
from family_calls.utils.logger import log_stale_event, set_call_context
from family_calls.utils.retry import retry_async

logger = logging.getLogger(__name__)


FAILURE_REASONS = {
    MediaAcquisitionError: EndReason.MEDIA_FAILED,
    SignalingWriteError: EndReason.SIGNALING_FAILED,
    RemoteDescriptionError: EndReason.NEGOTIATION_FAILED,
    ConnectionFailure: EndReason.CONNECTION_FAILED,
}

FAILED_END_REASONS = set(FAILURE_REASONS.values())

RINGING_STATES = (CallState.OUTGOING_RINGING, CallState.INCOMING_RINGING)
ENGAGED_STATES = (
    CallState.OUTGOING_RINGING,
    CallState.INCOMING_RINGING,
    CallState.CONNECTING,
    CallState.IN_CALL,
)

ANSWER_CONDITION = WriteCondition(
    status_in=(CallStatus.RINGING,),
    fields_null=("answer",),
    fields_present=("offer",),
)


def end_reason_for(error: Exception) -> EndReason:
    """Map a failure to the end reason persisted for it."""
    for error_type, reason in FAILURE_REASONS.items():
        if isinstance(error, error_type):
            return reason
    return EndReason.HANGUP


# Queued events

@dataclass
class RecordObserved:
    record: CallRecord
    source: str


@dataclass
class LocalCandidate:
    candidate: Optional[Dict[str, Any]]
    generation: int


@dataclass
class ConnectionStateChanged:
    connection_state: str
    generation: int


@dataclass
class RemoteTrack:
    track: Any
    generation: int


@dataclass
class TimerFired:
    kind: TimerKind
    generation: int


class CallSession:
    """
    Per-device call state machine.

    States: IDLE -> OUTGOING_RINGING | INCOMING_RINGING -> CONNECTING ->
    IN_CALL, with ENDED and FAILED terminal for the current call. reset()
    returns a terminal session to IDLE for the next call.
    """

    def __init__(
        self,
        identity: SessionIdentity,
        store: CallRecordStore,
        channel: SignalingChannel,
        media: MediaTransportAdapter,
        notifier: Optional[NotificationBridge] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize call session.

        Args:
            identity: Stable (profile id, role) of this device session
            store: Shared call record store
            channel: Signaling channel observing records for this identity
            media: Media/transport adapter
            notifier: Consumer of incoming/answered/ended events
            settings: Timers, retry policy and ICE servers
        """
        self.identity = identity
        self.store = store
        self.channel = channel
        self.media = media
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.guard = TerminationGuard(store, self.settings)

        self._events: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._notify_tasks: Set[asyncio.Task] = set()
        self._timers = CallTimers(self._on_timer, self.settings)

        self._generation = 0
        self.state = CallState.IDLE
        self.history: List[CallState] = [CallState.IDLE]
        self._clear_call()

    # Introspection

    @property
    def role(self) -> Role:
        return self.identity.role

    @property
    def accepting(self) -> bool:
        """Set while accept_incoming_call is in flight; suppresses declines."""
        return self._accepting

    @property
    def dialing(self) -> bool:
        """True while an outgoing call is being set up but has no record yet."""
        return self._pending_outgoing is not None

    @property
    def counterpart(self) -> Optional[CounterpartInfo]:
        return self._counterpart

    @property
    def ice_buffer(self) -> Optional[IceCandidateBuffer]:
        return self._ice

    def _clear_call(self) -> None:
        self.call_id: Optional[str] = None
        self.record: Optional[CallRecord] = None
        self.party: Optional[Party] = None
        self.end_reason: Optional[str] = None
        self.last_error: Optional[Exception] = None
        self.remote_track: Any = None
        self._counterpart: Optional[CounterpartInfo] = None
        self._accepting = False
        self._pending_outgoing: Optional[int] = None
        self._cancel_reason: Optional[EndReason] = None
        self._deferred_incoming: Dict[str, CallRecord] = {}
        self._local_media: Any = None
        self._pc: Optional[PeerConnectionHandle] = None
        self._ice: Optional[IceCandidateBuffer] = None
        self._answer_applied = False

    def _transition(self, new_state: CallState) -> None:
        if new_state == self.state:
            return
        logger.info(f"{self.identity.profile_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _require_current(self, generation: int, what: str) -> None:
        if not self._is_current(generation):
            raise StaleEventIgnored(f"{what} completed after the call was finished")

    # Lifecycle

    async def start(self) -> None:
        """Start the event worker and listen to the signaling channel."""
        if self._worker:
            return
        self.channel.add_listener(self._on_record)
        self._worker = asyncio.create_task(self._run(), name=f"call-session-{self.identity.profile_id}")
        logger.info(f"Call session started for {self.identity.profile_id} ({self.role.value})")

    async def stop(self) -> None:
        """Hang up any call in progress and stop the worker."""
        if self.state in ENGAGED_STATES or self.dialing:
            await self.end_call(EndReason.HANGUP)
        self.channel.remove_listener(self._on_record)
        self._timers.cancel_all()
        if self._worker:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None
        if self._notify_tasks:
            await asyncio.gather(*self._notify_tasks, return_exceptions=True)
        logger.info(f"Call session stopped for {self.identity.profile_id}")

    def reset(self) -> None:
        """Return a finished session to IDLE."""
        if not (self.state.is_terminal or self.state == CallState.IDLE):
            raise CallStateError(f"Cannot reset while {self.state.value}")
        if self.dialing:
            raise CallStateError("Cannot reset while dialing")
        if self._pc is not None or self._local_media is not None:
            raise CallStateError("Call resources are still being released")
        if self.call_id:
            self.channel.unwatch(self.call_id)
        self._next_generation()
        self._timers.cancel_all()
        self._clear_call()
        set_call_context(None)
        self._transition(CallState.IDLE)

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self._events.join()

    # Local actions

    async def start_outgoing_call(
        self,
        remote_id: str,
        remote_role: Optional[Role] = None,
    ) -> Optional[str]:
        """
        Dial a profile.

        Acquires local media, creates the record with the offer and enters
        OUTGOING_RINGING.

        Args:
            remote_id: Profile id of the callee
            remote_role: Callee role; defaults to the usual counterpart of our role

        Returns:
            The call id, or None if end_call cancelled the attempt meanwhile

        Raises:
            CallStateError: If not IDLE
            CalleeBusyError: If the callee is already in a call
            MediaAcquisitionError: If camera/microphone are unavailable (no record created)
            SignalingWriteError: If the record could not be created
        """
        if self.state != CallState.IDLE or self.dialing:
            raise CallStateError(f"Cannot start a call while {self.state.value}")
        if remote_id == self.identity.profile_id:
            raise CallStateError("Cannot call yourself")

        generation = self._next_generation()
        self._pending_outgoing = generation
        self.party = Party.CALLER
        self._counterpart = CounterpartInfo(profile_id=remote_id)
        logger.info(f"Dialing {remote_id}")

        try:
            if self.settings.busy_check_enabled:
                busy = await check_if_busy(self.store, remote_id, self.settings.busy_window_seconds)
                self._require_current(generation, "busy check")
                if busy.is_busy:
                    self._pending_outgoing = None
                    await self._replay_deferred_incoming()
                    self._clear_call()
                    raise CalleeBusyError(f"{remote_id} is already in a call", active_call_id=busy.active_call_id)

            try:
                media = await self.media.acquire_local_media()
            except MediaAcquisitionError as e:
                if not self._is_current(generation):
                    raise StaleEventIgnored("media acquisition failed after the call was cancelled")
                self._fail_without_record(e)
                await self._replay_deferred_incoming()
                raise
            if not self._is_current(generation):
                await self._release_stream(media)
                raise StaleEventIgnored("media acquired after the call was cancelled")
            self._local_media = media

            pc = await self._open_peer_connection(generation)
            offer = await pc.create_offer()
            self._require_current(generation, "offer creation")

            record = CallRecord(
                caller_id=self.identity.profile_id,
                callee_id=remote_id,
                caller_role=self.role,
                callee_role=remote_role or self.identity.default_counterpart_role,
                status=CallStatus.RINGING,
                offer=offer,
            )
            try:
                call_id = await self._write("create call record", lambda: self.store.create(record))
            except SignalingWriteError as e:
                if not self._is_current(generation):
                    raise StaleEventIgnored("record creation failed after the call was cancelled")
                await self._release_resources()
                self._fail_without_record(e)
                await self._replay_deferred_incoming()
                raise

            if not self._is_current(generation):
                # end_call landed while the record was being created
                await self._terminate_quietly(call_id, Party.CALLER, self._cancel_reason or EndReason.HANGUP)
                raise StaleEventIgnored("call cancelled while creating its record", call_id=call_id)

        except StaleEventIgnored as e:
            log_stale_event(logger, e.reason, **e.context)
            return None

        self._pending_outgoing = None
        self.call_id = call_id
        self.record = record.model_copy(update={"id": call_id})
        set_call_context(call_id)
        self.channel.watch(call_id)
        self._transition(CallState.OUTGOING_RINGING)
        self._timers.start(TimerKind.RING, generation)
        logger.info(f"Call {call_id} ringing {remote_id}")

        await self._replay_deferred_incoming()
        return call_id

    async def accept_incoming_call(self, call_id: str) -> bool:
        """
        Answer the ringing call.

        A no-op when call_id is no longer ringing (ended remotely, timed out)
        or is already being accepted.

        Returns:
            True if the session reached CONNECTING
        """
        if self.state != CallState.INCOMING_RINGING or call_id != self.call_id:
            log_stale_event(logger, "accept for a call that is not ringing", call_id=call_id, state=self.state.value)
            return False
        if self._accepting:
            log_stale_event(logger, "accept already in flight", call_id=call_id)
            return False

        generation = self._generation
        self._accepting = True
        self._timers.cancel(TimerKind.RING)
        logger.info(f"Accepting call {call_id}")

        try:
            try:
                media = await self.media.acquire_local_media()
            except MediaAcquisitionError as e:
                if self._is_current(generation):
                    await self._fail(e)
                return False
            if not self._is_current(generation):
                await self._release_stream(media)
                raise StaleEventIgnored("media acquired after the call was finished", call_id=call_id)
            self._local_media = media

            pc = await self._open_peer_connection(generation)
            offer = validate_description(self.record.offer if self.record else None, "offer")
            await pc.set_remote_description(offer)
            self._require_current(generation, "applying the offer")
            await self._ice.remote_description_applied()

            answer = await pc.create_answer()
            self._require_current(generation, "answer creation")

            result = await self._write(
                "write answer",
                lambda: self.store.update(
                    call_id,
                    {"answer": answer, "status": CallStatus.ACTIVE},
                    ANSWER_CONDITION,
                ),
            )
            self._require_current(generation, "answer write")

            if result == UpdateResult.CONFLICT:
                await self._answer_rejected(call_id)
                return False

            self._transition(CallState.CONNECTING)
            self._timers.start(TimerKind.CONNECT, generation)
            self._notify("answered")

            # Caller candidates may already be in the record
            if self.record is not None and self._ice is not None:
                await self._ice.observe_remote(self.record.candidates_of(Party.CALLER))
            return True

        except StaleEventIgnored as e:
            log_stale_event(logger, e.reason, **e.context)
            return False
        except (RemoteDescriptionError, SignalingWriteError) as e:
            if self._is_current(generation):
                await self._fail(e)
            return False
        finally:
            self._accepting = False

    async def reject_incoming_call(self, call_id: str) -> bool:
        """
        Decline the ringing call.

        A no-op while an accept is in flight or when call_id is not ringing.

        Returns:
            True if the call was declined
        """
        if self._accepting:
            log_stale_event(logger, "decline suppressed while accepting", call_id=call_id)
            return False
        if self.state != CallState.INCOMING_RINGING or call_id != self.call_id:
            log_stale_event(logger, "decline for a call that is not ringing", call_id=call_id, state=self.state.value)
            return False

        await self._end(EndReason.DECLINED)
        return True

    async def end_call(self, reason: Union[EndReason, str] = EndReason.HANGUP) -> None:
        """
        End the current call from any state.

        Never blocks on a pending dial or accept. Resources are released
        even when called repeatedly or with no call in progress.
        """
        reason = EndReason(reason)

        if reason == EndReason.DECLINED and self._accepting:
            log_stale_event(logger, "decline suppressed while accepting", call_id=self.call_id)
            return

        if self.dialing and self.state == CallState.IDLE:
            logger.info(f"Cancelling outgoing call setup ({reason.value})")
            self._cancel_reason = reason
            self._pending_outgoing = None
            self._next_generation()
            self.end_reason = reason.value
            self._transition(CallState.ENDED)
            await self._release_resources()
            await self._replay_deferred_incoming()
            return

        if self.state.is_terminal or self.state == CallState.IDLE:
            logger.debug(f"end_call({reason.value}) with no call in progress")
            await self._release_resources()
            return

        await self._end(reason)

    async def open_incoming_call(self, call_id: str) -> bool:
        """
        Surface a call id learned out of band (e.g. from a push notification).

        Returns:
            True if the session is now ringing for that call
        """
        try:
            record = await self.channel.fetch(call_id, deliver=False)
        except StoreException as e:
            logger.warning(f"Could not open call {call_id}: {e}")
            return False
        if record is None:
            return False
        if not self.channel.deliver(record, "open") and self.call_id != call_id:
            # The channel has this snapshot already; feed it directly
            self._enqueue(RecordObserved(record, "open"))
        await self.drain()
        return self.state == CallState.INCOMING_RINGING and self.call_id == call_id

    def suppress_incoming(self, context: IncomingContext) -> bool:
        """
        Whether the UI must not show an incoming-call screen for this ring.

        True for rings we created ourselves, rings addressed to someone else,
        rings for calls known to be over, and any ring other than the current
        one while we are dialing or engaged.
        """
        me = self.identity.profile_id
        if context.caller_id == me:
            return True
        if context.callee_id is not None and context.callee_id != me:
            return True
        if context.call_id == self.call_id:
            if self.record is not None and self.record.is_ended:
                return True
            return self.state != CallState.INCOMING_RINGING
        return self.dialing or self.state in ENGAGED_STATES

    def update_counterpart_name(self, display_name: Optional[str]) -> None:
        """Update the name pending notifications will use."""
        if self._counterpart is not None:
            self._counterpart.display_name = display_name

    # Event plumbing

    def _enqueue(self, event: Any) -> None:
        self._events.put_nowait(event)

    def _on_record(self, record: CallRecord, source: str) -> None:
        self._enqueue(RecordObserved(record, source))

    def _on_timer(self, kind: TimerKind, generation: int) -> None:
        self._enqueue(TimerFired(kind, generation))

    async def _run(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._dispatch(event)
            except StaleEventIgnored as e:
                log_stale_event(logger, e.reason, **e.context)
            except CallServiceException as e:
                logger.error(f"Error handling {type(event).__name__}: {e}")
            except Exception as e:
                logger.error(f"Unexpected error handling {type(event).__name__}: {e}", exc_info=True)
            finally:
                self._events.task_done()

    async def _dispatch(self, event: Any) -> None:
        if isinstance(event, RecordObserved):
            await self._handle_record(event.record, event.source)
            return

        if not self._is_current(event.generation):
            raise StaleEventIgnored(
                f"{type(event).__name__} from a finished call",
                event_generation=event.generation,
                generation=self._generation,
            )

        if isinstance(event, LocalCandidate):
            await self._handle_local_candidate(event.candidate)
        elif isinstance(event, ConnectionStateChanged):
            await self._handle_connection_state(event.connection_state)
        elif isinstance(event, RemoteTrack):
            self._handle_remote_track(event.track)
        elif isinstance(event, TimerFired):
            await self._handle_timer(event.kind)

    # Record events

    async def _handle_record(self, record: CallRecord, source: str) -> None:
        if record.id is not None and record.id == self.call_id:
            await self._handle_current_record(record)
            return

        if self._is_incoming_ring(record):
            await self._handle_incoming_ring(record, source)
            return

        raise StaleEventIgnored(
            "record is not the current call",
            call_id=record.id,
            current=self.call_id,
            status=record.status.value,
            source=source,
        )

    def _is_incoming_ring(self, record: CallRecord) -> bool:
        me = self.identity.profile_id
        return (
            record.callee_id == me
            and record.caller_id != me
            and record.status == CallStatus.RINGING
            and record.caller_role != self.role
        )

    async def _handle_current_record(self, record: CallRecord) -> None:
        if self.state.is_terminal:
            raise StaleEventIgnored("update for a finished call", call_id=record.id)
        self.record = record

        if record.is_ended:
            logger.info(f"Call {record.id} ended remotely ({record.end_reason})")
            await self._end(record.end_reason or EndReason.HANGUP, write=False)
            return

        if (
            self.party == Party.CALLER
            and self.state == CallState.OUTGOING_RINGING
            and record.answer is not None
            and not self._answer_applied
        ):
            await self._apply_answer(record)

        if self._ice is not None and self.party is not None:
            await self._ice.observe_remote(record.candidates_of(self.party.other))

    async def _apply_answer(self, record: CallRecord) -> None:
        generation = self._generation
        self._timers.cancel(TimerKind.RING)
        try:
            answer = validate_description(record.answer, "answer")
            await self._pc.set_remote_description(answer)
        except RemoteDescriptionError as e:
            if self._is_current(generation):
                await self._fail(e)
            return
        self._require_current(generation, "applying the answer")

        self._answer_applied = True
        self._transition(CallState.CONNECTING)
        self._timers.start(TimerKind.CONNECT, generation)
        self._notify("answered")
        try:
            await self._ice.remote_description_applied()
        except SignalingWriteError as e:
            if self._is_current(generation):
                await self._fail(e)

    async def _handle_incoming_ring(self, record: CallRecord, source: str) -> None:
        ring_age = utcnow() - record.created_at if record.created_at else timedelta(0)
        if ring_age > timedelta(seconds=self.settings.ring_timeout_seconds):
            raise StaleEventIgnored("ring expired", call_id=record.id, age=ring_age.total_seconds())

        if self.dialing and self.state == CallState.IDLE:
            if self._counterpart and record.caller_id == self._counterpart.profile_id:
                # Possible glare; decide once our own record exists
                self._deferred_incoming[record.id] = record
                logger.info(f"Deferring ring {record.id} from {record.caller_id} until dial completes")
                return
            await self._decline_busy(record)
            return

        if self.state == CallState.OUTGOING_RINGING and self.record is not None:
            if is_glare(self.record, record, self.identity.profile_id, self.settings.ring_timeout_seconds):
                await self._resolve_glare(record)
                return

        if self.state in ENGAGED_STATES:
            await self._decline_busy(record)
            return

        if self.state.is_terminal:
            if self._pc is not None or self._local_media is not None:
                raise StaleEventIgnored("ring while the previous call is still releasing", call_id=record.id)
            self.reset()

        self._ring(record, source)

    def _ring(self, record: CallRecord, source: str) -> None:
        generation = self._next_generation()
        self.call_id = record.id
        self.record = record
        self.party = Party.CALLEE
        self._counterpart = CounterpartInfo(profile_id=record.caller_id)
        set_call_context(record.id)
        self.channel.watch(record.id)
        self._transition(CallState.INCOMING_RINGING)
        self._timers.start(TimerKind.RING, generation)
        logger.info(f"Incoming call {record.id} from {record.caller_id} via {source}")
        self._notify("incoming")

    async def _resolve_glare(self, incoming: CallRecord) -> None:
        winner, loser = split_glare(self.record, incoming)
        if winner is self.record:
            log_stale_event(
                logger,
                "glare: keeping own call",
                own=self.record.id,
                other=incoming.id,
            )
            return

        own_id = self.record.id
        logger.info(f"Glare: call {incoming.id} wins over own call {own_id}")
        self._next_generation()
        self._timers.cancel_all()
        self.channel.unwatch(own_id)
        await self._release_resources()
        await self._terminate_quietly(own_id, Party.CALLER, EndReason.GLARE_LOST)

        self._clear_call()
        self._ring(incoming, "glare")

    async def _replay_deferred_incoming(self) -> None:
        deferred, self._deferred_incoming = self._deferred_incoming, {}
        for call_id in deferred:
            try:
                fresh = await self.store.get(call_id)
            except StoreException as e:
                logger.warning(f"Could not re-read deferred ring {call_id}: {e}")
                continue
            if fresh is not None:
                self._enqueue(RecordObserved(fresh, "deferred"))

    async def _decline_busy(self, record: CallRecord) -> None:
        logger.info(f"Declining ring {record.id} from {record.caller_id}: busy")
        await self._terminate_quietly(record.id, Party.CALLEE, EndReason.BUSY)

    async def _answer_rejected(self, call_id: str) -> None:
        try:
            record = await self.store.get(call_id)
        except StoreException as e:
            logger.warning(f"Could not re-read call {call_id}: {e}")
            record = None
        reason = record.end_reason if record is not None and record.is_ended else EndReason.HANGUP
        logger.info(f"Answer for {call_id} rejected; call already {record.status.value if record else 'gone'}")
        await self._end(reason, write=False)

    # Media events

    async def _handle_local_candidate(self, candidate: Optional[Dict[str, Any]]) -> None:
        if self._ice is None:
            raise StaleEventIgnored("local candidate without a peer connection")
        generation = self._generation
        try:
            await self._ice.add_local(candidate)
        except SignalingWriteError as e:
            if self._is_current(generation):
                await self._fail(e)

    async def _handle_connection_state(self, connection_state: str) -> None:
        logger.debug(f"Peer connection state: {connection_state}")
        if connection_state == "connected":
            self._timers.cancel(TimerKind.DISCONNECT_GRACE)
            if self.state == CallState.CONNECTING:
                self._connected()
        elif connection_state in ("disconnected", "failed"):
            if self.state not in (CallState.CONNECTING, CallState.IN_CALL):
                raise StaleEventIgnored(f"{connection_state} outside a call", state=self.state.value)
            if not self._timers.is_running(TimerKind.DISCONNECT_GRACE):
                logger.warning(f"Peer connection {connection_state}; waiting for recovery")
                self._timers.start(TimerKind.DISCONNECT_GRACE, self._generation)

    def _handle_remote_track(self, track: Any) -> None:
        self.remote_track = track
        if self.state == CallState.CONNECTING:
            self._connected()

    def _connected(self) -> None:
        self._timers.cancel(TimerKind.CONNECT)
        self._transition(CallState.IN_CALL)
        logger.info(f"Call {self.call_id} connected")

    async def _handle_timer(self, kind: TimerKind) -> None:
        if kind == TimerKind.RING:
            if self.state not in RINGING_STATES or self._accepting:
                raise StaleEventIgnored("ring timeout after the ring was resolved", state=self.state.value)
            logger.info(f"Call {self.call_id} not answered in time")
            await self._end(EndReason.TIMEOUT)
        elif kind == TimerKind.CONNECT:
            if self.state != CallState.CONNECTING:
                raise StaleEventIgnored("connect timeout after connecting", state=self.state.value)
            await self._fail(ConnectionFailure("peer connection did not connect in time"))
        elif kind == TimerKind.DISCONNECT_GRACE:
            if self.state not in (CallState.CONNECTING, CallState.IN_CALL):
                raise StaleEventIgnored("disconnect grace expired outside a call", state=self.state.value)
            await self._fail(ConnectionFailure("peer connection did not recover"))

    # Helpers

    async def _write(self, description: str, operation):
        return await retry_async(
            operation,
            attempts=self.settings.write_retry_attempts,
            base_delay=self.settings.write_retry_base_delay_seconds,
            description=description,
            call_id=self.call_id,
        )

    async def _open_peer_connection(self, generation: int) -> PeerConnectionHandle:
        pc = await self.media.create_peer_connection(
            self.settings.ice_server_dicts(),
            self._local_media,
        )
        if not self._is_current(generation):
            await pc.close()
            raise StaleEventIgnored("peer connection created after the call was finished")

        pc.on_track = lambda track: self._enqueue(RemoteTrack(track, generation))
        pc.on_ice_candidate = lambda candidate: self._enqueue(LocalCandidate(candidate, generation))
        pc.on_connection_state_change = lambda s: self._enqueue(ConnectionStateChanged(s, generation))

        self._pc = pc
        self._ice = IceCandidateBuffer(
            publish_local=self._publish_local_candidates,
            apply_remote=pc.add_ice_candidate,
            label=f"{self.identity.profile_id}/{self.party.value}",
        )
        return pc

    async def _publish_local_candidates(self, batch: List[Dict[str, Any]]) -> None:
        call_id, party = self.call_id, self.party
        await self._write(
            f"append {len(batch)} candidate(s)",
            lambda: self.store.append_candidates(call_id, party, batch),
        )

    async def _release_stream(self, stream: Any) -> None:
        try:
            await self.media.release_local_media(stream)
        except Exception as e:
            logger.warning(f"Failed to release local media: {e}")

    async def _release_resources(self) -> None:
        """Close the peer connection and stop local media. Safe to repeat."""
        pc, self._pc = self._pc, None
        media, self._local_media = self._local_media, None
        if self._ice is not None:
            self._ice.close()
        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.warning(f"Failed to close peer connection: {e}")
        if media is not None:
            await self._release_stream(media)

    async def _terminate_quietly(self, call_id: str, ended_by: Party, reason: EndReason) -> bool:
        try:
            return await self.guard.terminate(call_id, ended_by, reason)
        except SignalingWriteError as e:
            logger.error(f"Could not record end of call {call_id} ({reason.value}): {e}")
            return False

    async def _end(self, reason: Union[EndReason, str], write: bool = True) -> None:
        """Finish the current call: transition, release, persist, notify."""
        reason_value = reason.value if isinstance(reason, EndReason) else str(reason)
        call_id, party = self.call_id, self.party

        self._next_generation()
        self._timers.cancel_all()
        self._accepting = False
        self.end_reason = reason_value
        failed = write and reason_value in {r.value for r in FAILED_END_REASONS}
        self._transition(CallState.FAILED if failed else CallState.ENDED)
        if call_id:
            self.channel.unwatch(call_id)

        await self._release_resources()

        if write and call_id and party:
            await self._terminate_quietly(call_id, party, EndReason(reason_value))

        if call_id:
            self._notify("ended", end_reason=reason_value)

    async def _fail(self, error: Exception) -> None:
        reason = end_reason_for(error)
        self.last_error = error
        logger.error(f"Call {self.call_id} failed ({reason.value}): {error}")
        await self._end(reason)

    def _fail_without_record(self, error: Exception) -> None:
        self.last_error = error
        self.end_reason = end_reason_for(error).value
        self._pending_outgoing = None
        self._next_generation()
        self._transition(CallState.FAILED)
        logger.error(f"Outgoing call failed before a record existed: {error}")

    def _notify(self, event: str, end_reason: Optional[str] = None) -> None:
        if self.notifier is None or self.call_id is None or self._counterpart is None:
            return
        call_id = self.call_id
        counterpart = self._counterpart

        async def deliver():
            # Read the counterpart cell when the task runs, not when it is scheduled
            notification = CallNotification(
                event=event,
                call_id=call_id,
                counterpart_id=counterpart.profile_id,
                counterpart_name=counterpart.display_name,
                end_reason=end_reason,
            )
            try:
                await self.notifier.notify(notification)
            except Exception as e:
                logger.warning(f"Notification {event} for {call_id} failed: {e}")

        task = asyncio.create_task(deliver())
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)
