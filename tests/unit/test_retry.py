"""
Unit tests for the store write retry helper.
"""

from unittest.mock import AsyncMock

import pytest

from family_calls.utils.exceptions import SignalingWriteError, StoreException
from family_calls.utils.retry import retry_async


@pytest.mark.asyncio
async def test_returns_first_success():
    operation = AsyncMock(side_effect=[StoreException("blip"), "ok"])

    result = await retry_async(operation, attempts=3, base_delay=0, description="write offer")

    assert result == "ok"
    assert operation.await_count == 2


@pytest.mark.asyncio
async def test_gives_up_with_signaling_write_error():
    operation = AsyncMock(side_effect=StoreException("down"))

    with pytest.raises(SignalingWriteError) as exc_info:
        await retry_async(operation, attempts=2, base_delay=0, description="write answer", call_id="9")

    assert exc_info.value.call_id == "9"
    assert operation.await_count == 2


@pytest.mark.asyncio
async def test_other_errors_are_not_retried():
    operation = AsyncMock(side_effect=ValueError("bug"))

    with pytest.raises(ValueError):
        await retry_async(operation, attempts=3, base_delay=0, description="write")

    assert operation.await_count == 1
