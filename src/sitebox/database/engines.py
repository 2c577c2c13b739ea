"""Local MySQL/MariaDB server management.

One running server per (engine, version) is shared by every site that asks
for it; each site only gets its own schema. Engines are never downloaded on
the start path - ``install`` is a separate, explicit operation.
"""

import asyncio
from pathlib import Path
import re
import shutil

import structlog

from sitebox.config import Settings
from sitebox.downloads import ProgressCallback, download_file, extract_archive
from sitebox.errors import EngineNotInstalled, EngineUnreachable, SiteboxError
from sitebox.models import DatabaseKind, DatabaseServerInstance

logger = structlog.get_logger()

SERVER_BINARIES = {
    DatabaseKind.MYSQL: "mysqld",
    DatabaseKind.MARIADB: "mariadbd",
}

# Output lines longer than this are truncated in logs
LOG_LINE_PREVIEW_LENGTH = 300

_SCHEMA_NAME_RE = re.compile(r"^[A-Za-z0-9_]{1,64}$")


class DatabaseEngineManager:
    """Installs, starts, pings and stops shared database server processes."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engines_dir = settings.engines_dir
        self._instances: dict[tuple[DatabaseKind, str], DatabaseServerInstance] = {}
        self._locks: dict[tuple[DatabaseKind, str], asyncio.Lock] = {}
        self._log_tasks: set[asyncio.Task] = set()

    # -- layout --------------------------------------------------------------

    def install_path(self, kind: DatabaseKind, version: str) -> Path:
        return self.engines_dir / kind.value / f"{kind.value}-{version}"

    def data_path(self, kind: DatabaseKind, version: str) -> Path:
        return self.engines_dir / "data" / f"{kind.value}-{version}"

    def _bin(self, kind: DatabaseKind, version: str, name: str) -> Path:
        return self.install_path(kind, version) / "bin" / name

    def is_installed(self, kind: DatabaseKind, version: str) -> bool:
        if kind.is_file_based:
            return True
        return self._bin(kind, version, SERVER_BINARIES[kind]).exists()

    def installed_versions(self) -> list[tuple[DatabaseKind, str]]:
        """List (kind, version) pairs available locally."""
        found = []
        for kind in (DatabaseKind.MYSQL, DatabaseKind.MARIADB):
            kind_dir = self.engines_dir / kind.value
            if not kind_dir.is_dir():
                continue
            prefix = f"{kind.value}-"
            for entry in sorted(kind_dir.iterdir()):
                if entry.is_dir() and entry.name.startswith(prefix):
                    version = entry.name[len(prefix) :]
                    if self.is_installed(kind, version):
                        found.append((kind, version))
        return found

    def available_downloads(self) -> dict[str, list[str]]:
        return {kind: sorted(urls) for kind, urls in self.settings.engine_downloads.items()}

    def port_for(self, kind: DatabaseKind, version: str) -> int:
        """Deterministic port per (kind, version) so restarts find the same server."""
        base = (
            self.settings.mysql_base_port
            if kind is DatabaseKind.MYSQL
            else self.settings.mariadb_base_port
        )
        known = sorted(self.settings.engine_downloads.get(kind.value, {}))
        if version in known:
            return base + 10 * known.index(version)
        return base + 10 * (len(known) + sum(ord(c) for c in version) % 50)

    def get_instance(self, kind: DatabaseKind, version: str) -> DatabaseServerInstance | None:
        return self._instances.get((kind, version))

    def list_instances(self) -> list[DatabaseServerInstance]:
        return list(self._instances.values())

    # -- lifecycle -----------------------------------------------------------

    async def ensure_running(self, kind: DatabaseKind, version: str) -> DatabaseServerInstance:
        """Start the shared server for (kind, version) unless already running.

        Raises:
            EngineNotInstalled: If the engine binaries are missing
            EngineUnreachable: If the server process cannot be spawned
        """
        key = (kind, version)
        lock = self._locks.setdefault(key, asyncio.Lock())

        async with lock:
            instance = self._instances.get(key)
            if instance is not None and instance.running:
                logger.debug("engine_already_running", kind=kind.value, version=version)
                return instance

            if not self.is_installed(kind, version):
                raise EngineNotInstalled(
                    f"{kind.value} {version} is not installed "
                    f"in {self.install_path(kind, version)}",
                    step="provision_database",
                )

            port = self.port_for(kind, version)
            install_path = self.install_path(kind, version)

            # A server left running by an earlier session is adopted as-is
            if await self._ping_port(kind, version, port):
                instance = DatabaseServerInstance(
                    kind=kind,
                    version=version,
                    port=port,
                    install_path=install_path,
                    verified=True,
                )
                self._instances[key] = instance
                logger.info("engine_adopted", kind=kind.value, version=version, port=port)
                return instance

            await self._initialize_data_dir(kind, version)

            data_path = self.data_path(kind, version)
            args = [
                f"--basedir={install_path}",
                f"--datadir={data_path}",
                f"--port={port}",
                "--bind-address=127.0.0.1",
                f"--socket={data_path / 'mysql.sock'}",
                f"--pid-file={data_path / 'mysqld.pid'}",
            ]
            server_bin = self._bin(kind, version, SERVER_BINARIES[kind])

            logger.info(
                "starting_engine",
                kind=kind.value,
                version=version,
                port=port,
                command=f"{server_bin} {' '.join(args)}",
            )

            try:
                process = await asyncio.create_subprocess_exec(
                    str(server_bin),
                    *args,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=str(install_path),
                )
            except OSError as e:
                logger.error("engine_spawn_failed", kind=kind.value, version=version, error=str(e))
                raise EngineUnreachable(
                    f"Failed to start {kind.value} {version}: {e}",
                    step="provision_database",
                    cause=e,
                ) from e

            instance = DatabaseServerInstance(
                kind=kind,
                version=version,
                port=port,
                install_path=install_path,
                process=process,
                started_by_us=True,
            )
            self._instances[key] = instance
            self._drain_output(instance)

            logger.info("engine_started", kind=kind.value, version=version, pid=process.pid)
            return instance

    async def ping(self, instance: DatabaseServerInstance) -> bool:
        """Check the server answers on its own protocol (mysqladmin ping)."""
        if instance.process is not None and instance.process.returncode is not None:
            raise EngineUnreachable(
                f"{instance.kind.value} {instance.version} exited with code "
                f"{instance.process.returncode}",
                step="provision_database",
            )
        alive = await self._ping_port(instance.kind, instance.version, instance.port)
        if alive:
            instance.verified = True
        return alive

    async def ensure_schema(self, instance: DatabaseServerInstance, db_name: str) -> None:
        """Create the site's database if absent (idempotent)."""
        if not _SCHEMA_NAME_RE.match(db_name):
            raise SiteboxError(f"Invalid database name: {db_name!r}", step="create_schema")

        statement = (
            f"CREATE DATABASE IF NOT EXISTS `{db_name}` "
            "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
        )
        returncode, _, stderr = await self._run(
            str(self._bin(instance.kind, instance.version, "mysql")),
            "--host=127.0.0.1",
            f"--port={instance.port}",
            "--user=root",
            "-e",
            statement,
        )
        if returncode != 0:
            raise EngineUnreachable(
                f"Failed to create database {db_name}: {stderr.strip() or 'unknown error'}",
                step="create_schema",
            )
        logger.info("schema_ensured", kind=instance.kind.value, db_name=db_name)

    async def discard(self, instance: DatabaseServerInstance) -> None:
        """Forget an instance that never became reachable, killing it if we spawned it."""
        self._instances.pop(instance.key, None)
        process = instance.process
        if process is not None and process.returncode is None:
            process.kill()
            await process.wait()
            logger.warning("engine_killed", kind=instance.kind.value, version=instance.version)

    async def stop(self, kind: DatabaseKind, version: str, timeout: float = 10.0) -> None:
        """Stop a server this process started. Adopted servers are left alone."""
        instance = self._instances.pop((kind, version), None)
        if instance is None or instance.process is None:
            return

        process = instance.process
        if process.returncode is not None:
            return

        logger.info("stopping_engine", kind=kind.value, version=version, pid=process.pid)
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning("engine_force_kill", kind=kind.value, version=version)
            process.kill()
            await process.wait()

    async def stop_all(self) -> None:
        for kind, version in list(self._instances):
            try:
                await self.stop(kind, version)
            except Exception as e:
                logger.error("engine_stop_error", kind=kind.value, version=version, error=str(e))

    # -- explicit install ----------------------------------------------------

    async def install(
        self,
        kind: DatabaseKind,
        version: str,
        progress: ProgressCallback | None = None,
    ) -> Path:
        """Download and unpack an engine archive into the engines directory.

        Args:
            kind: Engine family
            version: Version key from the download catalog
            progress: Optional callback(bytes_done, bytes_total)

        Returns:
            Install path
        """
        if kind.is_file_based:
            raise SiteboxError("The file-based engine needs no install", step="install_engine")
        if self.is_installed(kind, version):
            logger.info("engine_already_installed", kind=kind.value, version=version)
            return self.install_path(kind, version)

        url = self.settings.engine_downloads.get(kind.value, {}).get(version)
        if not url:
            raise EngineNotInstalled(
                f"No download known for {kind.value} {version}", step="install_engine"
            )

        archive_path = self.settings.temp_dir / url.rsplit("/", 1)[-1]

        logger.info("downloading_engine", kind=kind.value, version=version, url=url)
        await download_file(
            url,
            archive_path,
            timeout=self.settings.download_timeout,
            progress=progress,
        )

        target = self.install_path(kind, version)
        try:
            await asyncio.to_thread(extract_archive, archive_path, target)
        finally:
            archive_path.unlink(missing_ok=True)

        if not self.is_installed(kind, version):
            raise SiteboxError(
                f"Archive for {kind.value} {version} has no {SERVER_BINARIES[kind]} binary",
                step="install_engine",
            )

        logger.info("engine_installed", kind=kind.value, version=version, path=str(target))
        return target

    # -- internals -----------------------------------------------------------

    async def _ping_port(self, kind: DatabaseKind, version: str, port: int) -> bool:
        admin_bin = self._bin(kind, version, "mysqladmin")
        if not admin_bin.exists():
            return False
        returncode, _, _ = await self._run(
            str(admin_bin),
            "--host=127.0.0.1",
            f"--port={port}",
            "--user=root",
            "--connect-timeout=2",
            "ping",
        )
        return returncode == 0

    async def _initialize_data_dir(self, kind: DatabaseKind, version: str) -> None:
        data_path = self.data_path(kind, version)
        if data_path.is_dir() and any(data_path.iterdir()):
            return

        data_path.mkdir(parents=True, exist_ok=True)
        install_path = self.install_path(kind, version)

        if kind is DatabaseKind.MYSQL:
            cmd = [
                str(self._bin(kind, version, "mysqld")),
                "--initialize-insecure",
                f"--basedir={install_path}",
                f"--datadir={data_path}",
            ]
        else:
            script = install_path / "scripts" / "mariadb-install-db"
            cmd = [
                str(script),
                f"--basedir={install_path}",
                f"--datadir={data_path}",
                "--auth-root-authentication-method=normal",
            ]

        logger.info(
            "initializing_engine_data", kind=kind.value, version=version, path=str(data_path)
        )
        returncode, _, stderr = await self._run(*cmd, timeout=120.0)
        if returncode != 0:
            shutil.rmtree(data_path, ignore_errors=True)
            raise EngineUnreachable(
                f"Failed to initialize {kind.value} {version} data directory: {stderr.strip()}",
                step="provision_database",
            )

    async def _run(self, *cmd: str, timeout: float | None = None) -> tuple[int, str, str]:
        """Run a short-lived command with a bounded wait."""
        timeout = timeout or self.settings.db_command_timeout
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.debug("engine_command_spawn_failed", command=cmd[0], error=str(e))
            return -1, "", str(e)

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            return -1, "", f"Command timed out after {timeout}s"

        return (
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode(errors="replace") if stdout else "",
            stderr.decode(errors="replace") if stderr else "",
        )

    def _drain_output(self, instance: DatabaseServerInstance) -> None:
        process = instance.process
        if process is None:
            return
        for stream_name, stream in (("stdout", process.stdout), ("stderr", process.stderr)):
            if stream is None:
                continue
            task = asyncio.create_task(_log_lines(stream, instance, stream_name))
            self._log_tasks.add(task)
            task.add_done_callback(self._log_tasks.discard)


async def _log_lines(
    stream: asyncio.StreamReader, instance: DatabaseServerInstance, stream_name: str
) -> None:
    while True:
        line = await stream.readline()
        if not line:
            return
        text = line.decode(errors="replace").rstrip()
        if text:
            logger.debug(
                "engine_output",
                kind=instance.kind.value,
                version=instance.version,
                stream=stream_name,
                line=text[:LOG_LINE_PREVIEW_LENGTH],
            )
