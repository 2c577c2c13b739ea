import asyncio

import httpx
import pytest
import respx

from sitebox.errors import BackendUnresponsive, OperationCancelled
from sitebox.probe import ReadinessProbe

URL = "http://127.0.0.1:8005/"


@pytest.fixture
def probe():
    return ReadinessProbe(max_attempts=3, interval=0, initial_delay=0)


@pytest.mark.asyncio
async def test_ready_after_connection_refused(probe):
    async with respx.mock() as respx_mock:
        route = respx_mock.get(URL)
        route.side_effect = [
            httpx.ConnectError("Connection refused"),
            httpx.Response(httpx.codes.OK),
        ]

        status = await probe.wait_until_ready(URL)

        assert status == httpx.codes.OK
        assert route.call_count == 2


@pytest.mark.asyncio
async def test_any_status_counts_as_ready(probe):
    async with respx.mock() as respx_mock:
        respx_mock.get(URL).mock(return_value=httpx.Response(httpx.codes.INTERNAL_SERVER_ERROR))

        status = await probe.wait_until_ready(URL)

        assert status == httpx.codes.INTERNAL_SERVER_ERROR


@pytest.mark.asyncio
async def test_redirect_is_not_followed(probe):
    async with respx.mock() as respx_mock:
        respx_mock.get(URL).mock(
            return_value=httpx.Response(
                httpx.codes.FOUND, headers={"location": "http://127.0.0.1:8005/wp-admin/"}
            )
        )

        status = await probe.wait_until_ready(URL)

        assert status == httpx.codes.FOUND


@pytest.mark.asyncio
async def test_exhausted_budget_reports_last_error(probe):
    async with respx.mock() as respx_mock:
        route = respx_mock.get(URL).mock(side_effect=httpx.ConnectError("Connection refused"))

        with pytest.raises(BackendUnresponsive) as exc_info:
            await probe.wait_until_ready(URL)

        assert route.call_count == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.url == URL
        assert exc_info.value.last_error_code == "ConnectError"
        assert "refused" in exc_info.value.last_error_message
        assert exc_info.value.step == "readiness_probe"


@pytest.mark.asyncio
async def test_attempt_override(probe):
    async with respx.mock() as respx_mock:
        route = respx_mock.get(URL).mock(side_effect=httpx.ConnectError("Connection refused"))

        with pytest.raises(BackendUnresponsive):
            await probe.wait_until_ready(URL, max_attempts=5)

        assert route.call_count == 5


@pytest.mark.asyncio
async def test_dead_backend_fails_fast(probe):
    async with respx.mock(assert_all_called=False) as respx_mock:
        route = respx_mock.get(URL)

        with pytest.raises(BackendUnresponsive) as exc_info:
            await probe.wait_until_ready(URL, is_alive=lambda: False)

        assert not route.called
        assert "exited" in exc_info.value.message


@pytest.mark.asyncio
async def test_cancel_event_aborts(probe):
    cancel = asyncio.Event()
    cancel.set()

    async with respx.mock(assert_all_called=False) as respx_mock:
        respx_mock.get(URL)

        with pytest.raises(OperationCancelled):
            await probe.wait_until_ready(URL, cancel_event=cancel)
