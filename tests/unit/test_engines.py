"""Unit tests for DatabaseEngineManager with subprocesses mocked out."""

import io
import tarfile
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import respx

from sitebox.database.engines import DatabaseEngineManager
from sitebox.errors import EngineNotInstalled, EngineUnreachable, SiteboxError
from sitebox.models import DatabaseKind

MYSQL_80_URL = (
    "https://cdn.mysql.com/Downloads/MySQL-8.0/mysql-8.0.37-linux-glibc2.28-x86_64.tar.xz"
)


@pytest.fixture
def manager(settings):
    return DatabaseEngineManager(settings)


def _install_binaries(manager, kind=DatabaseKind.MYSQL, version="8.0"):
    bin_dir = manager.install_path(kind, version) / "bin"
    bin_dir.mkdir(parents=True)
    for name in ("mysqld", "mariadbd", "mysqladmin", "mysql"):
        (bin_dir / name).write_text("")


async def _refuse_ping(*cmd, timeout=None):
    """Nothing listens yet; every other command succeeds."""
    return (1, "", "refused") if "ping" in cmd else (0, "", "")


def _fake_process(pid=999):
    process = MagicMock()
    process.pid = pid
    process.returncode = None
    process.stdout = None
    process.stderr = None
    process.wait = AsyncMock(return_value=0)
    return process


def _tar_gz(members: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tf:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class TestLayout:
    def test_not_installed_by_default(self, manager):
        assert manager.is_installed(DatabaseKind.MYSQL, "8.0") is False
        assert manager.is_installed(DatabaseKind.SQLITE, "3") is True
        assert manager.installed_versions() == []

    def test_installed_versions(self, manager):
        _install_binaries(manager, DatabaseKind.MYSQL, "8.0")
        _install_binaries(manager, DatabaseKind.MARIADB, "10.11")

        assert manager.installed_versions() == [
            (DatabaseKind.MYSQL, "8.0"),
            (DatabaseKind.MARIADB, "10.11"),
        ]

    def test_ports_are_stable_and_distinct(self, manager):
        mysql_80 = manager.port_for(DatabaseKind.MYSQL, "8.0")
        mysql_84 = manager.port_for(DatabaseKind.MYSQL, "8.4")
        mariadb = manager.port_for(DatabaseKind.MARIADB, "10.11")

        assert mysql_80 == manager.port_for(DatabaseKind.MYSQL, "8.0")
        assert len({mysql_80, mysql_84, mariadb}) == 3


class TestEnsureRunning:
    @pytest.mark.asyncio
    async def test_missing_engine(self, manager):
        with pytest.raises(EngineNotInstalled):
            await manager.ensure_running(DatabaseKind.MYSQL, "8.0")

    @pytest.mark.asyncio
    async def test_adopts_server_already_listening(self, manager):
        _install_binaries(manager)
        manager._run = AsyncMock(return_value=(0, "mysqld is alive", ""))

        with patch("asyncio.create_subprocess_exec", AsyncMock()) as mock_exec:
            instance = await manager.ensure_running(DatabaseKind.MYSQL, "8.0")

        mock_exec.assert_not_called()
        assert instance.started_by_us is False
        assert instance.verified is True
        assert instance.running is True

    @pytest.mark.asyncio
    async def test_spawns_server_once(self, manager):
        _install_binaries(manager)
        manager._run = _refuse_ping
        process = _fake_process()

        with patch(
            "asyncio.create_subprocess_exec", AsyncMock(return_value=process)
        ) as mock_exec:
            first = await manager.ensure_running(DatabaseKind.MYSQL, "8.0")
            second = await manager.ensure_running(DatabaseKind.MYSQL, "8.0")

        assert first is second
        assert first.started_by_us is True
        assert first.verified is False
        assert mock_exec.call_count == 1
        args = mock_exec.call_args[0]
        assert args[0].endswith("bin/mysqld")
        assert f"--port={first.port}" in args
        assert "--bind-address=127.0.0.1" in args

    @pytest.mark.asyncio
    async def test_spawn_failure_is_unreachable(self, manager):
        _install_binaries(manager)
        manager._run = _refuse_ping

        with patch(
            "asyncio.create_subprocess_exec", AsyncMock(side_effect=PermissionError("denied"))
        ):
            with pytest.raises(EngineUnreachable):
                await manager.ensure_running(DatabaseKind.MYSQL, "8.0")


class TestPingAndSchema:
    @pytest.mark.asyncio
    async def test_ping_raises_when_server_exited(self, manager):
        _install_binaries(manager)
        manager._run = _refuse_ping
        process = _fake_process()
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            instance = await manager.ensure_running(DatabaseKind.MYSQL, "8.0")

        process.returncode = 1

        with pytest.raises(EngineUnreachable):
            await manager.ping(instance)

    @pytest.mark.asyncio
    async def test_ping_marks_verified(self, manager):
        _install_binaries(manager)
        manager._run = AsyncMock(return_value=(0, "", ""))
        instance = await manager.ensure_running(DatabaseKind.MYSQL, "8.0")
        instance.verified = False

        assert await manager.ping(instance) is True
        assert instance.verified is True

    @pytest.mark.asyncio
    async def test_ensure_schema(self, manager):
        _install_binaries(manager)
        manager._run = AsyncMock(return_value=(0, "", ""))
        instance = await manager.ensure_running(DatabaseKind.MYSQL, "8.0")

        await manager.ensure_schema(instance, "blog_db")

        statement = manager._run.await_args.args[-1]
        assert statement.startswith("CREATE DATABASE IF NOT EXISTS `blog_db`")

    @pytest.mark.asyncio
    async def test_ensure_schema_rejects_bad_name(self, manager):
        _install_binaries(manager)
        manager._run = AsyncMock(return_value=(0, "", ""))
        instance = await manager.ensure_running(DatabaseKind.MYSQL, "8.0")

        with pytest.raises(SiteboxError):
            await manager.ensure_schema(instance, "blog`; DROP")

    @pytest.mark.asyncio
    async def test_ensure_schema_failure(self, manager):
        _install_binaries(manager)
        manager._run = AsyncMock(return_value=(0, "", ""))
        instance = await manager.ensure_running(DatabaseKind.MYSQL, "8.0")
        manager._run.return_value = (1, "", "Access denied")

        with pytest.raises(EngineUnreachable) as exc_info:
            await manager.ensure_schema(instance, "blog_db")

        assert "Access denied" in exc_info.value.message


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_all_terminates_spawned_servers(self, manager):
        _install_binaries(manager)
        manager._run = _refuse_ping
        process = _fake_process()
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            await manager.ensure_running(DatabaseKind.MYSQL, "8.0")

        await manager.stop_all()

        process.terminate.assert_called_once()
        assert manager.list_instances() == []


class TestInstall:
    @pytest.mark.asyncio
    async def test_install_from_catalog(self, manager, settings):
        archive = _tar_gz(
            {
                "mysql-8.0.37/bin/mysqld": b"",
                "mysql-8.0.37/bin/mysqladmin": b"",
            }
        )
        progress = MagicMock()

        async with respx.mock() as respx_mock:
            respx_mock.get(MYSQL_80_URL).mock(
                return_value=httpx.Response(httpx.codes.OK, content=archive)
            )

            path = await manager.install(DatabaseKind.MYSQL, "8.0", progress=progress)

        assert path == manager.install_path(DatabaseKind.MYSQL, "8.0")
        assert manager.is_installed(DatabaseKind.MYSQL, "8.0")
        assert list(settings.temp_dir.glob("*.tar.xz")) == []
        progress.assert_called()

    @pytest.mark.asyncio
    async def test_unknown_version(self, manager):
        with pytest.raises(EngineNotInstalled):
            await manager.install(DatabaseKind.MYSQL, "4.1")

    @pytest.mark.asyncio
    async def test_archive_without_server_binary(self, manager):
        archive = _tar_gz({"mysql-8.0.37/README": b"docs"})

        async with respx.mock() as respx_mock:
            respx_mock.get(MYSQL_80_URL).mock(
                return_value=httpx.Response(httpx.codes.OK, content=archive)
            )

            with pytest.raises(SiteboxError) as exc_info:
                await manager.install(DatabaseKind.MYSQL, "8.0")

        assert exc_info.value.step == "install_engine"
