"""Shared fixtures for unit tests."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from sitebox.backends.base import Backend, BackendHandle, ExitCallback
from sitebox.config import Settings
from sitebox.database.provisioner import DatabaseProvisioner, ProvisionResult
from sitebox.hosts import NullHostsRegistry
from sitebox.installer import InstallOutcome
from sitebox.models import BackendKind, DatabaseKind, DatabaseServerInstance, Site
from sitebox.orchestrator import SiteOrchestrator
from sitebox.ports import PortAllocator
from sitebox.runtime_config import RuntimeConfigWriter
from sitebox.store import SiteStore


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temp dir with all waits collapsed."""
    return Settings(
        _env_file=None,
        home_dir=tmp_path / "SiteBox",
        port_range_start=8000,
        port_range_end=8010,
        reserved_ports=[8008],
        probe_initial_delay=0,
        probe_interval=0,
        engine_start_attempts=3,
        engine_start_interval=0,
        db_connect_attempts=2,
        db_connect_interval=0,
        container_db_wait_attempts=3,
        container_db_wait_interval=0,
        container_watch_interval=0,
        stop_grace_seconds=0.1,
    )


@pytest.fixture
def make_site(tmp_path):
    def _make(name: str = "blog", **kwargs) -> Site:
        path = tmp_path / "sites" / name
        defaults = {"domain": f"{name}.local", "path": path, "port": 8001}
        defaults.update(kwargs)
        site = Site(name=name, **defaults)
        site.document_root.mkdir(parents=True, exist_ok=True)
        return site

    return _make


class FakeBackend(Backend):
    """In-memory backend that records spawns and lets tests simulate exits."""

    kind = BackendKind.NATIVE

    def __init__(self, spawn_delay: float = 0.0):
        self.spawn_delay = spawn_delay
        self.start_calls: list[str] = []
        self.stop_calls: list[str] = []
        self.cleanup_calls: list[str] = []
        self.handles: dict[str, BackendHandle] = {}
        self.callbacks: dict[str, ExitCallback] = {}
        self.fail_start: Exception | None = None

    async def start(self, site: Site, on_exit: ExitCallback) -> BackendHandle:
        self.start_calls.append(site.id)
        if self.spawn_delay:
            await asyncio.sleep(self.spawn_delay)
        if self.fail_start is not None:
            raise self.fail_start
        handle = BackendHandle(site_id=site.id, kind=self.kind, port=site.port)
        self.handles[site.id] = handle
        self.callbacks[site.id] = on_exit
        return handle

    async def stop(self, site_id: str) -> None:
        self.stop_calls.append(site_id)
        handle = self.handles.pop(site_id, None)
        if handle:
            handle.stopping = True
            handle.exited.set()

    async def is_running(self, site: Site) -> bool:
        handle = self.handles.get(site.id)
        return bool(handle and handle.is_alive)

    async def wait_exited(self, site_id: str, timeout: float) -> bool:
        return True

    async def cleanup(self, site: Site) -> None:
        self.cleanup_calls.append(site.id)
        await self.stop(site.id)

    async def shutdown(self) -> None:
        for site_id in list(self.handles):
            await self.stop(site_id)

    async def simulate_exit(self, site_id: str, exit_code: int) -> None:
        handle = self.handles.pop(site_id)
        handle.exit_code = exit_code
        handle.exited.set()
        await self.callbacks[site_id](site_id, exit_code)


class FakeFetcher:
    def __init__(self):
        self.fetched: list[str] = []
        self.error: Exception | None = None

    async def fetch(self, site: Site) -> None:
        if self.error is not None:
            raise self.error
        (site.document_root / "wp-content" / "plugins").mkdir(parents=True, exist_ok=True)
        self.fetched.append(site.name)


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def engines():
    """DatabaseEngineManager double whose server answers pings."""
    manager = MagicMock()
    instance = DatabaseServerInstance(
        kind=DatabaseKind.MYSQL,
        version="8.0",
        port=3306,
        install_path=MagicMock(),
        started_by_us=True,
        verified=True,
    )
    manager.ensure_running = AsyncMock(return_value=instance)
    manager.ping = AsyncMock(return_value=True)
    manager.ensure_schema = AsyncMock()
    manager.discard = AsyncMock()
    manager.stop_all = AsyncMock()
    manager.instance = instance
    return manager


@pytest.fixture
def free_ports():
    """Ports the fake bind-test reports as free."""
    return set(range(8000, 8011))


@pytest.fixture
def port_allocator(settings, free_ports, monkeypatch):
    allocator = PortAllocator(
        settings.port_table_path,
        range_start=settings.port_range_start,
        range_end=settings.port_range_end,
        reserved_ports=settings.reserved_ports,
    )

    async def _available(port: int) -> bool:
        return port in free_ports

    monkeypatch.setattr(allocator, "is_port_available", _available)
    return allocator


@pytest.fixture
def orchestrator(settings, port_allocator, engines, fake_backend):
    probe = MagicMock()
    probe.wait_until_ready = AsyncMock(return_value=200)
    installer = MagicMock()
    installer.install = AsyncMock(return_value=InstallOutcome.INSTALLED)

    return SiteOrchestrator(
        settings=settings,
        store=SiteStore(settings.sites_dir),
        ports=port_allocator,
        provisioner=DatabaseProvisioner(engines, settings),
        backends={BackendKind.NATIVE: fake_backend},
        probe=probe,
        installer=installer,
        config_writer=RuntimeConfigWriter(),
        fetcher=FakeFetcher(),
        hosts=NullHostsRegistry(),
    )


@pytest.fixture
def sqlite_result():
    return ProvisionResult(engine=DatabaseKind.SQLITE, version=None, db_name="blog_db", host="")
