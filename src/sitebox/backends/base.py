"""Backend contract shared by the native-process and container backends."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sitebox.models import BackendKind, Site

# (site_id, exit_code) - exit_code is None when it could not be determined
ExitCallback = Callable[[str, int | None], Awaitable[None]]


@dataclass
class BackendHandle:
    """Reference to the process or container group serving one site."""

    site_id: str
    kind: BackendKind
    port: int
    process: asyncio.subprocess.Process | None = None
    container_ids: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    stopping: bool = False
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    exit_code: int | None = None

    @property
    def is_alive(self) -> bool:
        if self.process is not None:
            return self.process.returncode is None
        return not self.exited.is_set()

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None


class Backend(ABC):
    """Runs a site's application and reports unexpected exits."""

    kind: BackendKind

    @abstractmethod
    async def start(self, site: Site, on_exit: ExitCallback) -> BackendHandle:
        """Start serving ``site`` on ``site.port``.

        ``on_exit`` is awaited when the backend exits without a stop request.
        """

    @abstractmethod
    async def stop(self, site_id: str) -> None:
        """Request termination. Safe to call when nothing is running."""

    @abstractmethod
    async def is_running(self, site: Site) -> bool: ...

    @abstractmethod
    async def wait_exited(self, site_id: str, timeout: float) -> bool:
        """Wait (bounded) for a stopped backend to finish exiting."""

    @abstractmethod
    async def cleanup(self, site: Site) -> None:
        """Release every resource held for ``site`` (delete path)."""

    @abstractmethod
    async def shutdown(self) -> None: ...

    def get_handle(self, site_id: str) -> BackendHandle | None:
        return None
