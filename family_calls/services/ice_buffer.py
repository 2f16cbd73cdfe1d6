"""
ICE candidate buffer.

One buffer per call, covering both directions:

* local candidates produced by our peer connection are held until the
  remote description is applied, then written to the record in generation
  order;
* remote candidates read from the record are tracked with a cursor over the
  append-only list, held until the remote description is applied, then
  applied in arrival order.

Draining happens under a lock, so re-observing the same (or a longer)
candidate list never applies an entry twice or skips one.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from family_calls.services.media_adapter import candidate_key

logger = logging.getLogger(__name__)

Candidate = Dict[str, Any]


class IceCandidateBuffer:
    """Orders and de-duplicates candidate exchange for one call."""

    def __init__(
        self,
        publish_local: Callable[[List[Candidate]], Awaitable[Any]],
        apply_remote: Callable[[Candidate], Awaitable[None]],
        label: str = "call",
    ):
        """
        Initialize buffer.

        Args:
            publish_local: Writes a batch of local candidates to the record
            apply_remote: Hands one remote candidate to the peer connection
            label: Name used in log lines
        """
        self._publish_local = publish_local
        self._apply_remote = apply_remote
        self.label = label

        self._local_pending: Deque[Candidate] = deque()
        self._local_seen: Set[str] = set()
        self._remote_pending: Deque[Candidate] = deque()
        self._remote_cursor = 0

        self._remote_description_applied = False
        self._lock = asyncio.Lock()
        self.closed = False

        self.published_count = 0
        self.applied_count = 0
        self.failed_count = 0

    @property
    def remote_cursor(self) -> int:
        """Number of remote candidates consumed from the record so far."""
        return self._remote_cursor

    @property
    def pending_local(self) -> int:
        return len(self._local_pending)

    @property
    def pending_remote(self) -> int:
        return len(self._remote_pending)

    @property
    def ready(self) -> bool:
        return self._remote_description_applied

    async def add_local(self, candidate: Optional[Candidate]) -> None:
        """Queue a candidate from our peer connection. None marks end of gathering."""
        if self.closed or candidate is None:
            return

        key = candidate_key(candidate)
        if key in self._local_seen:
            logger.debug(f"[{self.label}] duplicate local candidate dropped")
            return
        self._local_seen.add(key)
        self._local_pending.append(candidate)

        if self._remote_description_applied:
            await self.flush()

    async def observe_remote(self, candidates: List[Candidate]) -> int:
        """
        Ingest the full remote candidate list as currently stored.

        Only the suffix beyond the cursor is new.

        Returns:
            Number of newly ingested candidates
        """
        if self.closed:
            return 0

        if len(candidates) < self._remote_cursor:
            # Append-only list observed shorter than before: older snapshot
            logger.debug(
                f"[{self.label}] remote candidate list shrank "
                f"({len(candidates)} < {self._remote_cursor}), ignoring"
            )
            return 0

        fresh = candidates[self._remote_cursor:]
        self._remote_cursor = len(candidates)
        self._remote_pending.extend(fresh)

        if fresh and self._remote_description_applied:
            await self.flush()
        return len(fresh)

    async def remote_description_applied(self) -> None:
        """Open the buffer and drain everything queued so far."""
        self._remote_description_applied = True
        await self.flush()

    async def flush(self) -> None:
        """
        Drain both queues in order.

        Raises:
            SignalingWriteError: If writing local candidates failed; the batch
                stays queued at the front
        """
        if not self._remote_description_applied:
            return

        async with self._lock:
            if self.closed:
                return

            if self._local_pending:
                batch = list(self._local_pending)
                self._local_pending.clear()
                try:
                    await self._publish_local(batch)
                except Exception:
                    self._local_pending.extendleft(reversed(batch))
                    raise
                self.published_count += len(batch)
                logger.debug(f"[{self.label}] published {len(batch)} local candidate(s)")

            while self._remote_pending and not self.closed:
                candidate = self._remote_pending.popleft()
                try:
                    await self._apply_remote(candidate)
                    self.applied_count += 1
                except Exception as e:
                    # A single unusable candidate does not fail the call
                    self.failed_count += 1
                    logger.warning(f"[{self.label}] failed to apply remote candidate: {e}")

    def close(self) -> None:
        """Stop accepting and applying candidates."""
        self.closed = True
        self._local_pending.clear()
        self._remote_pending.clear()
