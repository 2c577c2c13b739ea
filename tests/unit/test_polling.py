"""Unit tests for poll_until."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from sitebox.errors import OperationCancelled, PollTimeout
from sitebox.polling import poll_until


class TestPollUntil:
    @pytest.mark.asyncio
    async def test_returns_first_truthy_result(self):
        check = AsyncMock(side_effect=[False, None, "ready"])

        result = await poll_until(check, max_attempts=5, interval=0)

        assert result == "ready"
        assert check.await_count == 3

    @pytest.mark.asyncio
    async def test_retries_listed_exceptions(self):
        check = AsyncMock(side_effect=[ConnectionError("refused"), True])

        result = await poll_until(check, max_attempts=3, interval=0, retry_on=(ConnectionError,))

        assert result is True

    @pytest.mark.asyncio
    async def test_other_exceptions_propagate(self):
        check = AsyncMock(side_effect=KeyError("boom"))

        with pytest.raises(KeyError):
            await poll_until(check, max_attempts=3, interval=0, retry_on=(ConnectionError,))

        assert check.await_count == 1

    @pytest.mark.asyncio
    async def test_exhaustion_carries_last_error(self):
        error = ConnectionError("refused")
        check = AsyncMock(side_effect=error)

        with pytest.raises(PollTimeout) as exc_info:
            await poll_until(check, max_attempts=3, interval=0, description="db_ping")

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error is error
        assert exc_info.value.step == "db_ping"
        assert check.await_count == 3

    @pytest.mark.asyncio
    async def test_cancel_event_stops_before_next_attempt(self):
        cancel = asyncio.Event()

        async def _check():
            cancel.set()
            return False

        with pytest.raises(OperationCancelled):
            await poll_until(_check, max_attempts=10, interval=5, cancel_event=cancel)

    @pytest.mark.asyncio
    async def test_cancel_event_interrupts_initial_delay(self):
        cancel = asyncio.Event()
        check = AsyncMock(return_value=True)
        cancel.set()

        with pytest.raises(OperationCancelled):
            await poll_until(
                check, max_attempts=1, interval=0, initial_delay=10, cancel_event=cancel
            )

        check.assert_not_awaited()
