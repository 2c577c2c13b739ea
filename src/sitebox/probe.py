"""HTTP readiness probe for freshly started backends."""

import asyncio
from collections.abc import Callable

import httpx
import structlog

from sitebox.errors import BackendUnresponsive, PollTimeout
from sitebox.polling import poll_until

logger = structlog.get_logger()


class ReadinessProbe:
    """Polls a URL until the server answers with any HTTP status."""

    def __init__(
        self,
        max_attempts: int = 10,
        interval: float = 0.5,
        initial_delay: float = 1.0,
        request_timeout: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_attempts = max_attempts
        self.interval = interval
        self.initial_delay = initial_delay
        self.request_timeout = request_timeout
        self._transport = transport

    async def wait_until_ready(
        self,
        url: str,
        *,
        is_alive: Callable[[], bool] | None = None,
        cancel_event: asyncio.Event | None = None,
        max_attempts: int | None = None,
        interval: float | None = None,
        initial_delay: float | None = None,
    ) -> int:
        """Wait until ``url`` responds.

        Args:
            url: Loopback URL of the backend
            is_alive: Optional backend liveness check; a dead backend fails fast
            cancel_event: Aborts the wait with OperationCancelled when set
            max_attempts: Override the configured attempt budget
            interval: Override the configured delay between attempts
            initial_delay: Override the configured delay before the first attempt

        Returns:
            HTTP status code of the first response

        Raises:
            BackendUnresponsive: No response within the attempt budget
        """
        attempts = max_attempts or self.max_attempts

        async with httpx.AsyncClient(
            timeout=self.request_timeout,
            follow_redirects=False,
            transport=self._transport,
        ) as client:

            async def _check() -> int:
                if is_alive is not None and not is_alive():
                    raise BackendUnresponsive(
                        "Backend exited before answering",
                        url=url,
                        step="readiness_probe",
                    )
                response = await client.get(url)
                return response.status_code

            try:
                status_code = await poll_until(
                    _check,
                    max_attempts=attempts,
                    interval=self.interval if interval is None else interval,
                    initial_delay=self.initial_delay if initial_delay is None else initial_delay,
                    description="readiness_probe",
                    retry_on=(httpx.TransportError,),
                    cancel_event=cancel_event,
                )
            except PollTimeout as e:
                last = e.last_error
                logger.warning(
                    "backend_unresponsive",
                    url=url,
                    attempts=attempts,
                    last_error=str(last) if last else None,
                )
                raise BackendUnresponsive(
                    f"No response from {url} after {attempts} attempts",
                    url=url,
                    attempts=attempts,
                    last_error_code=type(last).__name__ if last else None,
                    last_error_message=str(last) if last else None,
                    step="readiness_probe",
                    cause=last,
                ) from e

        logger.info("backend_ready", url=url, status_code=status_code)
        return status_code
