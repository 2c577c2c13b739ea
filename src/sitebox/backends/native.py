"""Native backend: one PHP built-in web server process per site.

The process is bound to the loopback address and serves the site's document
root. A supervisor task waits for it to exit and, unless a stop was
requested, reports the exit so the orchestrator can update the site.
"""

import asyncio
from pathlib import Path

import structlog

from sitebox.backends.base import Backend, BackendHandle, ExitCallback
from sitebox.errors import BackendSpawnError, RootMissing
from sitebox.models import BackendKind, Site

logger = structlog.get_logger()

LOG_LINE_PREVIEW_LENGTH = 500


class NativeProcessBackend(Backend):
    """Manages per-site ``php -S`` processes."""

    kind = BackendKind.NATIVE

    def __init__(
        self,
        php_binary: str = "php",
        host: str = "127.0.0.1",
        grace_seconds: float = 5.0,
        php_binaries: dict[str, str] | None = None,
        php_root: Path | None = None,
        require_php_version: bool = False,
        liveness_timeout: float = 0.5,
    ) -> None:
        self.php_binary = php_binary
        self.host = host
        self.grace_seconds = grace_seconds
        self.php_binaries = php_binaries or {}
        self.php_root = php_root
        self.require_php_version = require_php_version
        self.liveness_timeout = liveness_timeout
        self._handles: dict[str, BackendHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def resolve_php(self, site: Site) -> str:
        """Pick the PHP runtime for the site's PHP version.

        Lookup order: the ``php_binaries`` map, then
        ``<php_root>/<version>/bin/php``, then the default ``php_binary``
        unless an exact version is required.

        Raises:
            BackendSpawnError: If the version is required and not available
        """
        version = site.php_version
        if version in self.php_binaries:
            return self.php_binaries[version]
        if self.php_root is not None:
            candidate = self.php_root / version / "bin" / "php"
            if candidate.is_file():
                return str(candidate)
        if self.require_php_version:
            raise BackendSpawnError(
                f"PHP {version} is not installed",
                site_id=site.id,
                step="start_backend",
            )
        logger.debug("php_version_default_binary", site_id=site.id, php_version=version)
        return self.php_binary

    def build_command(self, site: Site) -> list[str]:
        return [
            self.resolve_php(site),
            "-S",
            f"{self.host}:{site.port}",
            "-t",
            str(site.document_root),
            "-d",
            "display_errors=1",
            "-d",
            "log_errors=1",
        ]

    async def start(self, site: Site, on_exit: ExitCallback) -> BackendHandle:
        """Spawn the web server for a site.

        Args:
            site: Site to serve
            on_exit: Awaited with (site_id, exit_code) on unexpected exit

        Returns:
            Handle to the running process

        Raises:
            RootMissing: If the document root does not exist
            BackendSpawnError: If the runtime cannot be spawned
        """
        handle = self._handles.get(site.id)
        if handle and handle.is_alive and not handle.stopping:
            logger.warning("process_already_running", site_id=site.id, pid=handle.pid)
            return handle

        docroot = site.document_root
        if not docroot.is_dir():
            raise RootMissing(
                f"Document root does not exist: {docroot}",
                site_id=site.id,
                step="start_backend",
            )

        cmd = self.build_command(site)
        logger.info("starting_site_process", site_id=site.id, port=site.port, command=cmd)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(docroot),
            )
        except OSError as e:
            logger.error("failed_to_start_process", site_id=site.id, error=str(e))
            raise BackendSpawnError(
                f"Failed to start {cmd[0]}: {e}",
                site_id=site.id,
                step="start_backend",
                cause=e,
            ) from e

        handle = BackendHandle(
            site_id=site.id,
            kind=self.kind,
            port=site.port,
            process=process,
        )
        self._handles[site.id] = handle

        for stream_name, stream in (("stdout", process.stdout), ("stderr", process.stderr)):
            if stream is not None:
                self._spawn(self._log_output(site.id, stream, stream_name))
        self._spawn(self._supervise(handle, on_exit))

        logger.info("site_process_started", site_id=site.id, pid=process.pid, port=site.port)
        return handle

    async def stop(self, site_id: str) -> None:
        """Send SIGTERM and return; SIGKILL follows after the grace period."""
        handle = self._handles.get(site_id)
        if not handle:
            logger.debug("no_process_to_stop", site_id=site_id)
            return

        handle.stopping = True
        if not handle.is_alive:
            logger.debug("process_already_dead", site_id=site_id)
            return

        logger.info("stopping_site_process", site_id=site_id, pid=handle.pid)
        try:
            handle.process.terminate()
        except ProcessLookupError:
            return
        self._spawn(self._kill_after_grace(handle))

    async def wait_exited(self, site_id: str, timeout: float) -> bool:
        handle = self._handles.get(site_id)
        if handle is None:
            return True
        try:
            await asyncio.wait_for(handle.exited.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def is_running(self, site: Site) -> bool:
        """Alive if this process supervises it, else if its port accepts connections.

        The second check covers servers started by another sitebox process.
        """
        handle = self._handles.get(site.id)
        if handle is not None:
            return handle.is_alive
        return await self._accepts_connections(site.port)

    async def _accepts_connections(self, port: int) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, port), timeout=self.liveness_timeout
            )
        except (OSError, TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def cleanup(self, site: Site) -> None:
        await self.stop(site.id)
        await self.wait_exited(site.id, self.grace_seconds + 1)

    async def shutdown(self) -> None:
        site_ids = list(self._handles)
        for site_id in site_ids:
            await self.stop(site_id)
        for site_id in site_ids:
            await self.wait_exited(site_id, self.grace_seconds + 1)

    def get_handle(self, site_id: str) -> BackendHandle | None:
        return self._handles.get(site_id)

    # -- background tasks ----------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _supervise(self, handle: BackendHandle, on_exit: ExitCallback) -> None:
        exit_code = await handle.process.wait()
        handle.exit_code = exit_code
        handle.exited.set()
        if self._handles.get(handle.site_id) is handle:
            del self._handles[handle.site_id]

        logger.info(
            "site_process_exited",
            site_id=handle.site_id,
            exit_code=exit_code,
            requested=handle.stopping,
        )
        if handle.stopping:
            return

        try:
            await on_exit(handle.site_id, exit_code)
        except Exception as e:
            logger.error(
                "exit_callback_failed",
                site_id=handle.site_id,
                error=str(e),
                exc_info=True,
            )

    async def _kill_after_grace(self, handle: BackendHandle) -> None:
        try:
            await asyncio.wait_for(handle.exited.wait(), timeout=self.grace_seconds)
            logger.info("process_terminated_gracefully", site_id=handle.site_id)
        except TimeoutError:
            logger.warning("process_force_kill", site_id=handle.site_id, pid=handle.pid)
            try:
                handle.process.kill()
            except ProcessLookupError:
                pass

    async def _log_output(
        self, site_id: str, stream: asyncio.StreamReader, stream_name: str
    ) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode(errors="replace").rstrip()
            if text:
                logger.debug(
                    "site_process_output",
                    site_id=site_id,
                    stream=stream_name,
                    line=text[:LOG_LINE_PREVIEW_LENGTH],
                )
