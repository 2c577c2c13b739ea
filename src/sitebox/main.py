"""Composition root: builds the orchestrator and its collaborators from settings."""

from sitebox.appfiles import ApplicationFetcher
from sitebox.backends import ContainerBackend, DockerClientWrapper, NativeProcessBackend
from sitebox.config import Settings, get_settings
from sitebox.database import DatabaseEngineManager, DatabaseProvisioner
from sitebox.hosts import HostsRegistry, NullHostsRegistry
from sitebox.installer import Installer
from sitebox.models import BackendKind
from sitebox.orchestrator import SiteOrchestrator
from sitebox.ports import PortAllocator
from sitebox.probe import ReadinessProbe
from sitebox.runtime_config import RuntimeConfigWriter
from sitebox.store import SiteStore


def build_orchestrator(
    settings: Settings | None = None,
    hosts: HostsRegistry | None = None,
) -> SiteOrchestrator:
    settings = settings or get_settings()
    settings.sites_dir.mkdir(parents=True, exist_ok=True)

    engines = DatabaseEngineManager(settings)
    ports = PortAllocator(
        settings.port_table_path,
        range_start=settings.port_range_start,
        range_end=settings.port_range_end,
        reserved_ports=settings.reserved_ports,
        bind_host=settings.bind_test_host,
    )
    backends = {
        BackendKind.NATIVE: NativeProcessBackend(
            php_binary=settings.php_binary,
            host=settings.loopback_host,
            grace_seconds=settings.stop_grace_seconds,
            php_binaries=settings.php_binaries,
            php_root=settings.php_dir,
            require_php_version=settings.require_php_version,
            liveness_timeout=settings.liveness_timeout,
        ),
        BackendKind.CONTAINER: ContainerBackend(
            DockerClientWrapper(max_workers=settings.docker_max_workers), settings
        ),
    }

    return SiteOrchestrator(
        settings=settings,
        store=SiteStore(settings.sites_dir),
        ports=ports,
        provisioner=DatabaseProvisioner(engines, settings),
        backends=backends,
        probe=ReadinessProbe(
            max_attempts=settings.probe_max_attempts,
            interval=settings.probe_interval,
            initial_delay=settings.probe_initial_delay,
            request_timeout=settings.probe_timeout,
        ),
        installer=Installer(timeout=settings.install_timeout),
        config_writer=RuntimeConfigWriter(),
        fetcher=ApplicationFetcher(settings),
        hosts=hosts or NullHostsRegistry(),
    )
