"""
Signaling channel.

Merges the push change feed with two polling loops into one stream of
"record observed" callbacks:

* push: every change to a record this profile takes part in;
* incoming poll: ringing records addressed to us, limited to a lookback
  window (older rings are deliberately never surfaced);
* watched poll: point reads of the call(s) the session is engaged on, so a
  dropped answer, candidate or end notification is still seen.

All sources go through deliver(), which keeps a progress fingerprint per
record id. An observation that carries nothing new is dropped, so a poll
re-discovering what the push feed already delivered triggers nothing.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from family_calls.config import Settings, get_settings
from family_calls.models.call_record import CallRecord, CallStatus, STATUS_RANK, utcnow
from family_calls.models.call_state import SessionIdentity
from family_calls.services.record_store import CallRecordStore, RecordQuery
from family_calls.utils.exceptions import StoreException
from family_calls.utils.logger import log_stale_event

logger = logging.getLogger(__name__)

RecordListener = Callable[[CallRecord, str], None]
Fingerprint = Tuple[int, bool, bool, int, int]

RESUBSCRIBE_MIN_DELAY = 1.0
RESUBSCRIBE_MAX_DELAY = 30.0


def fingerprint(record: CallRecord) -> Fingerprint:
    """How far a record has progressed. Every field only ever grows."""
    return (
        STATUS_RANK[record.status],
        record.offer is not None,
        record.answer is not None,
        len(record.caller_candidates),
        len(record.callee_candidates),
    )


def _dominated(candidate: Fingerprint, reference: Fingerprint) -> bool:
    return all(c <= r for c, r in zip(candidate, reference))


class SignalingChannel:
    """Push + poll record observation for one device session."""

    def __init__(
        self,
        store: CallRecordStore,
        identity: SessionIdentity,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize signaling channel.

        Args:
            store: Shared call record store
            identity: Profile this device runs as
            settings: Poll intervals and lookback window
            clock: Source of "now" for the lookback window
        """
        self.store = store
        self.identity = identity
        self.settings = settings or get_settings()
        self._clock = clock

        self._listeners: List[RecordListener] = []
        self._progress: Dict[str, Fingerprint] = {}
        self._last_seen: Dict[str, datetime] = {}
        self._watched: Set[str] = set()
        self._tasks: List[asyncio.Task] = []
        self._running = False

        self.delivered_count = 0
        self.duplicate_count = 0
        self.stale_count = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def watched(self) -> Set[str]:
        return set(self._watched)

    def add_listener(self, listener: RecordListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: RecordListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def watch(self, call_id: str) -> None:
        """Poll this call id until unwatched."""
        self._watched.add(call_id)

    def unwatch(self, call_id: str) -> None:
        self._watched.discard(call_id)

    async def start(self) -> None:
        """Start push and poll loops, then poll once immediately."""
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._push_loop(), name="signaling-push"),
            asyncio.create_task(self._poll_loop(), name="signaling-poll"),
            asyncio.create_task(self._watch_loop(), name="signaling-watch"),
        ]
        # Let the push loop register its subscription before the first poll
        await asyncio.sleep(0)
        await self.poll_once()
        logger.info(f"Signaling channel started for {self.identity.profile_id}")

    async def stop(self) -> None:
        """Cancel all loops."""
        if not self._running:
            return
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"Signaling channel stopped for {self.identity.profile_id}")

    # Delivery

    def deliver(self, record: CallRecord, source: str) -> bool:
        """
        Hand an observed record to the listeners unless it carries nothing new.

        Returns:
            True if delivered
        """
        if record.id is None:
            return False

        current = fingerprint(record)
        previous = self._progress.get(record.id)

        if previous is not None:
            if current == previous:
                self.duplicate_count += 1
                logger.debug(f"Duplicate observation of {record.id} via {source} dropped")
                return False
            if current[0] < previous[0] or _dominated(current, previous):
                self.stale_count += 1
                log_stale_event(
                    logger,
                    "older snapshot of call record",
                    call_id=record.id,
                    source=source,
                    status=record.status.value,
                )
                return False
            current = tuple(max(c, p) for c, p in zip(current, previous))

        self._progress[record.id] = current
        self._last_seen[record.id] = self._clock()
        self.delivered_count += 1
        logger.debug(f"Observed {record.id} ({record.status.value}) via {source}")

        for listener in list(self._listeners):
            listener(record, source)
        return True

    def forget(self, call_id: str) -> None:
        """Drop the progress entry so the next observation is delivered again."""
        self._progress.pop(call_id, None)
        self._last_seen.pop(call_id, None)

    def prune(self) -> int:
        """
        Drop progress entries for records that cannot be surfaced again.

        An entry is kept while watched, and until it is older than twice the
        lookback window; polling never returns records that old.
        """
        horizon = self._clock() - timedelta(seconds=2 * self.settings.poll_lookback_seconds)
        stale = [
            call_id for call_id, seen in self._last_seen.items()
            if seen < horizon and call_id not in self._watched
        ]
        for call_id in stale:
            self.forget(call_id)
        if stale:
            logger.debug(f"Pruned {len(stale)} progress entries")
        return len(stale)

    # Reads

    async def poll_once(self) -> int:
        """
        Look for ringing records addressed to us within the lookback window.

        Returns:
            Number of records delivered
        """
        filters = RecordQuery(
            callee_id=self.identity.profile_id,
            status=CallStatus.RINGING,
            created_after=self._clock() - timedelta(seconds=self.settings.poll_lookback_seconds),
        )
        try:
            records = await self.store.query(
                filters,
                limit=self.settings.poll_batch_limit,
                newest_first=True,
            )
        except StoreException as e:
            logger.warning(f"Incoming call poll failed: {e}")
            return 0

        delivered = 0
        # Newest first from the store; hand them over in creation order
        for record in reversed(records):
            if self.deliver(record, "poll"):
                delivered += 1
        return delivered

    async def poll_watched_once(self) -> int:
        """Point-read every watched call."""
        delivered = 0
        for call_id in list(self._watched):
            try:
                record = await self.store.get(call_id)
            except StoreException as e:
                logger.warning(f"Watched call poll failed for {call_id}: {e}")
                continue
            if record is not None and self.deliver(record, "watch"):
                delivered += 1
        return delivered

    async def fetch(self, call_id: str, deliver: bool = True) -> Optional[CallRecord]:
        """
        Read a call id learned out of band (deep link, push notification).

        Args:
            call_id: Record id
            deliver: Hand the record to the listeners as well

        Raises:
            StoreException: If the read failed
        """
        record = await self.store.get(call_id)
        if record is None:
            logger.warning(f"Call {call_id} not found")
            return None
        if not record.involves(self.identity.profile_id):
            logger.warning(f"Call {call_id} does not involve {self.identity.profile_id}")
            return None
        if deliver:
            self.deliver(record, "fetch")
        return record

    # Loops

    async def _push_loop(self) -> None:
        filters = RecordQuery(participant_id=self.identity.profile_id)
        delay = RESUBSCRIBE_MIN_DELAY

        while self._running:
            received = False
            try:
                async for event in self.store.subscribe(filters):
                    received = True
                    delay = RESUBSCRIBE_MIN_DELAY
                    self.deliver(event.record, f"push:{event.kind}")
            except StoreException as e:
                logger.warning(f"Change feed failed: {e}; resubscribing in {delay:.0f}s")
            else:
                if not received:
                    logger.info("No push change feed available; relying on polling")
                    return
                logger.warning(f"Change feed closed; resubscribing in {delay:.0f}s")

            await asyncio.sleep(delay)
            delay = min(delay * 2, RESUBSCRIBE_MAX_DELAY)

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.settings.poll_interval_seconds)
            await self.poll_once()
            self.prune()

    async def _watch_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.settings.active_poll_interval_seconds)
            if self._watched:
                await self.poll_watched_once()
