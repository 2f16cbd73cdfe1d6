"""
Busy detection for outgoing calls.

A callee is busy when it takes part in an active call created recently.
Read errors count as "not busy": a failed check must never block a call.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from family_calls.models.call_record import CallStatus, utcnow
from family_calls.services.record_store import CallRecordStore, RecordQuery
from family_calls.utils.exceptions import StoreException

logger = logging.getLogger(__name__)


@dataclass
class BusyCheckResult:
    is_busy: bool
    active_call_id: Optional[str] = None


async def check_if_busy(
    store: CallRecordStore,
    profile_id: str,
    window_seconds: float,
) -> BusyCheckResult:
    """
    Check whether a profile is already in a call.

    Args:
        store: Call record store
        profile_id: Profile to check
        window_seconds: Only active records created within this window count

    Returns:
        BusyCheckResult
    """
    filters = RecordQuery(
        participant_id=profile_id,
        status=CallStatus.ACTIVE,
        created_after=utcnow() - timedelta(seconds=window_seconds),
    )
    try:
        records = await store.query(filters, limit=1)
    except StoreException as e:
        logger.warning(f"Busy check for {profile_id} failed, assuming not busy: {e}")
        return BusyCheckResult(is_busy=False)

    if records:
        logger.info(f"{profile_id} is busy in call {records[0].id}")
        return BusyCheckResult(is_busy=True, active_call_id=records[0].id)
    return BusyCheckResult(is_busy=False)
