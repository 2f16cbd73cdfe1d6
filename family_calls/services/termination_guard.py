"""
Termination guard.

Every way a call can end (hangup, decline, timeout, glare loss, failures)
goes through terminate(), a conditional write that only succeeds while the
record is not yet ended. The first writer decides ended_at/ended_by/end_reason;
everyone after it is a silent no-op.
"""

import logging
from typing import Optional, Union

from family_calls.config import Settings, get_settings
from family_calls.models.call_record import CallStatus, EndReason, Party, utcnow
from family_calls.services.record_store import NOT_ENDED, CallRecordStore, UpdateResult
from family_calls.utils.retry import retry_async

logger = logging.getLogger(__name__)


class TerminationGuard:
    """Idempotent end-of-call write."""

    def __init__(self, store: CallRecordStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    async def terminate(
        self,
        call_id: str,
        ended_by: Party,
        end_reason: Union[EndReason, str],
    ) -> bool:
        """
        End a call if it is not ended yet.

        Args:
            call_id: Call record id
            ended_by: Side performing the termination
            end_reason: Reason persisted with the record

        Returns:
            True if this call wrote the end, False if it was already ended

        Raises:
            SignalingWriteError: If the store stayed unreachable across retries
        """
        reason = end_reason.value if isinstance(end_reason, EndReason) else str(end_reason)
        patch = {
            "status": CallStatus.ENDED,
            "ended_at": utcnow(),
            "ended_by": ended_by,
            "end_reason": reason,
        }

        result = await retry_async(
            lambda: self.store.update(call_id, patch, NOT_ENDED),
            attempts=self.settings.write_retry_attempts,
            base_delay=self.settings.write_retry_base_delay_seconds,
            description=f"terminate {call_id}",
            call_id=call_id,
        )

        if result == UpdateResult.SUCCESS:
            logger.info(f"Call {call_id} ended by {ended_by.value}: {reason}")
            return True

        logger.debug(f"Call {call_id} already ended; {reason} not recorded")
        return False
