"""Site lifecycle state machine.

Every status change goes through ``_transition``, which checks the allowed
transitions and persists the record before returning. Per-site locks
serialize start/stop/delete and backend exit reports for one site while
different sites proceed in parallel.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime

import docker
import structlog
from structlog.contextvars import bound_contextvars

from sitebox.appfiles import ApplicationFetcher
from sitebox.backends.base import Backend
from sitebox.backends.container import ContainerBackend
from sitebox.config import Settings
from sitebox.database.provisioner import DatabaseProvisioner
from sitebox.errors import (
    InvalidTransition,
    NameConflict,
    OperationCancelled,
    SiteboxError,
    SiteNotFound,
)
from sitebox.hosts import HostsRegistry
from sitebox.installer import InstallOutcome, Installer
from sitebox.models import (
    BackendKind,
    CreateSiteRequest,
    Site,
    SiteStatus,
    SiteStatusReport,
    StartResult,
    sanitize_site_name,
)
from sitebox.ports import PortAllocator
from sitebox.probe import ReadinessProbe
from sitebox.runtime_config import RuntimeConfigWriter
from sitebox.store import SiteStore

logger = structlog.get_logger()

ALLOWED_TRANSITIONS: dict[SiteStatus, set[SiteStatus]] = {
    SiteStatus.STOPPED: {SiteStatus.STARTING},
    # STARTING -> STOPPED only when a stop request cancels the start
    SiteStatus.STARTING: {SiteStatus.RUNNING, SiteStatus.ERROR, SiteStatus.STOPPED},
    # RUNNING -> STOPPED/ERROR when the backend exits on its own
    SiteStatus.RUNNING: {SiteStatus.STOPPING, SiteStatus.STOPPED, SiteStatus.ERROR},
    SiteStatus.STOPPING: {SiteStatus.STOPPED, SiteStatus.ERROR},
    SiteStatus.ERROR: {SiteStatus.STARTING, SiteStatus.STOPPED},
}

ACTIVE_STATUSES = {SiteStatus.STARTING, SiteStatus.RUNNING, SiteStatus.STOPPING}


@dataclass
class _StartProgress:
    step: str = "start"
    port_acquired: bool = False
    backend: Backend | None = None


@dataclass
class CleanupReport:
    cleaned: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    ports_dropped: list[int] = field(default_factory=list)
    orphan_groups: list[str] = field(default_factory=list)


class SiteOrchestrator:
    """Creates, starts, stops and deletes sites."""

    def __init__(
        self,
        settings: Settings,
        store: SiteStore,
        ports: PortAllocator,
        provisioner: DatabaseProvisioner,
        backends: dict[BackendKind, Backend],
        probe: ReadinessProbe,
        installer: Installer,
        config_writer: RuntimeConfigWriter,
        fetcher: ApplicationFetcher,
        hosts: HostsRegistry,
    ):
        self.settings = settings
        self.store = store
        self.ports = ports
        self.provisioner = provisioner
        self.backends = backends
        self.probe = probe
        self.installer = installer
        self.config_writer = config_writer
        self.fetcher = fetcher
        self.hosts = hosts
        self.non_admin_mode = settings.non_admin_mode

        self._sites: dict[str, Site] = {}
        self._site_locks: dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()
        self._cancel_events: dict[str, asyncio.Event] = {}

    # -- helpers -------------------------------------------------------------

    def _lock_for(self, site_id: str) -> asyncio.Lock:
        return self._site_locks.setdefault(site_id, asyncio.Lock())

    def _backend_for(self, site: Site) -> Backend:
        backend = self.backends.get(site.backend)
        if backend is None:
            raise SiteboxError(
                f"Backend {site.backend.value} is not available",
                site_id=site.id,
                step="select_backend",
            )
        return backend

    def _held_ports(self, site_id: str) -> set[int]:
        """Ports of other sites that are not STOPPED, ERROR sites included."""
        return {
            s.port
            for s in self._sites.values()
            if s.id != site_id and s.status is not SiteStatus.STOPPED and s.port
        }

    async def _transition(
        self, site: Site, new_status: SiteStatus, *, error: BaseException | None = None
    ) -> None:
        old_status = site.status
        if new_status not in ALLOWED_TRANSITIONS[old_status]:
            raise InvalidTransition(
                f"Cannot move site from {old_status.value} to {new_status.value}",
                site_id=site.id,
            )
        site.status = new_status
        if new_status is SiteStatus.ERROR:
            site.last_error = str(error) if error else "unknown error"
        elif new_status in (SiteStatus.STARTING, SiteStatus.RUNNING):
            site.last_error = None
        self.store.save(site)
        logger.info(
            "site_status_changed",
            site_id=site.id,
            site_name=site.name,
            old_status=old_status.value,
            new_status=new_status.value,
        )

    def site_url(self, site: Site) -> str:
        return site.url(self.non_admin_mode)

    def probe_url(self, site: Site) -> str:
        return f"http://{self.settings.loopback_host}:{site.port}/"

    # -- queries -------------------------------------------------------------

    def get(self, site_id: str) -> Site:
        site = self._sites.get(site_id)
        if site is None:
            raise SiteNotFound(f"Site not found: {site_id}", site_id=site_id)
        return site

    def find(self, id_or_name: str) -> Site | None:
        site = self._sites.get(id_or_name)
        if site is not None:
            return site
        name = sanitize_site_name(id_or_name)
        return next((s for s in self._sites.values() if s.name == name), None)

    def list_sites(self) -> list[Site]:
        return sorted(self._sites.values(), key=lambda s: s.created_at)

    async def status(self, site_id: str) -> SiteStatusReport:
        site = self.get(site_id)
        alive = False
        backend = self.backends.get(site.backend)
        if backend is not None:
            try:
                alive = await backend.is_running(site)
            except Exception as e:
                logger.warning("backend_status_check_failed", site_id=site_id, error=str(e))
        return SiteStatusReport(
            site_id=site.id,
            name=site.name,
            status=site.status,
            url=self.site_url(site),
            port=site.port,
            backend=site.backend,
            database=site.database,
            backend_alive=alive,
            last_error=site.last_error,
        )

    # -- startup -------------------------------------------------------------

    async def initialize(self) -> list[Site]:
        """Load persisted records and reconcile them with what is actually running."""
        loaded = await asyncio.to_thread(self.store.load_all)
        async with self._registry_lock:
            for site in loaded:
                self._sites[site.id] = site

        for site in loaded:
            if site.status not in ACTIVE_STATUSES:
                continue
            alive = False
            backend = self.backends.get(site.backend)
            if backend is not None:
                try:
                    alive = await backend.is_running(site)
                except Exception as e:
                    logger.warning("reconcile_check_failed", site_id=site.id, error=str(e))
            if alive:
                continue
            async with self._lock_for(site.id):
                # Stale status left by a crash; not a real lifecycle transition
                previous = site.status
                site.status = SiteStatus.STOPPED
                self.store.save(site)
                await self.ports.release(site.id)
                logger.info(
                    "site_status_reconciled",
                    site_id=site.id,
                    site_name=site.name,
                    recorded_status=previous.value,
                )

        logger.info("orchestrator_initialized", sites=len(loaded))
        return self.list_sites()

    # -- create --------------------------------------------------------------

    async def create(self, request: CreateSiteRequest) -> Site:
        """Create a site directory, reserve a port and write a STOPPED record.

        Raises:
            NameConflict: If the name or its directory is taken
            NoAvailablePorts: If no port can be reserved
            SiteboxError: If fetching application files fails
        """
        name = sanitize_site_name(request.name)
        site_dir = self.store.site_dir(name)

        async with self._registry_lock:
            if any(s.name == name for s in self._sites.values()) or site_dir.exists():
                raise NameConflict(f"Site {name!r} already exists", step="create")
            site = Site(
                name=name,
                domain=request.domain or f"{name}.local",
                path=site_dir,
                port=0,
                php_version=request.php_version,
                app_version=request.app_version,
                backend=request.backend,
                database=request.database,
                requested_database=request.database,
                database_version=request.database_version,
                title=request.title or request.name,
                admin=request.admin,
            )
            try:
                site_dir.mkdir(parents=True)
            except OSError as e:
                raise SiteboxError(
                    f"Cannot create site directory {site_dir}: {e}",
                    site_id=site.id,
                    step="create_directory",
                    cause=e,
                ) from e
            self._sites[site.id] = site

        log = logger.bind(site_id=site.id, site_name=name)
        log.info("site_creating", backend=site.backend.value, database=site.database.value)

        step = "allocate_port"
        try:
            site.port = await self.ports.allocate(site.id, name, held=self._held_ports(site.id))
            step = "fetch_application"
            await self.fetcher.fetch(site)
            step = "write_record"
            self.store.save(site)
            await self.ports.release(site.id)
        except Exception as e:
            log.error("site_create_failed", step=step, error=str(e))
            await self._rollback_create(site)
            if isinstance(e, SiteboxError):
                raise e.with_context(site_id=site.id, step=step)
            raise SiteboxError(
                f"Site creation failed: {e}", site_id=site.id, step=step, cause=e
            ) from e

        if not self.non_admin_mode:
            await self._register_host(site)

        log.info("site_created", port=site.port, path=str(site.path))
        return site

    async def _rollback_create(self, site: Site) -> None:
        try:
            await self.ports.remove(site.id)
        except Exception as e:
            logger.warning("rollback_port_failed", site_id=site.id, error=str(e))
        try:
            await asyncio.to_thread(self.store.delete, site)
        except OSError as e:
            logger.warning("rollback_directory_failed", site_id=site.id, error=str(e))
        async with self._registry_lock:
            self._sites.pop(site.id, None)

    # -- start ---------------------------------------------------------------

    async def start(self, site_id: str) -> StartResult:
        """Bring a site to RUNNING.

        No-op for a RUNNING site. Any failure leaves the site in ERROR with
        the error retained, and releases what this start acquired.

        Raises:
            SiteNotFound: Unknown site
            OperationCancelled: A stop request arrived while starting
            SiteboxError: Failure of a required step (site id and step attached)
        """
        with bound_contextvars(site_id=site_id, operation="start"):
            return await self._start(site_id)

    async def _start(self, site_id: str) -> StartResult:
        async with self._lock_for(site_id):
            site = self.get(site_id)
            if site.status is SiteStatus.RUNNING:
                logger.info("site_already_running", site_id=site_id)
                return StartResult(site=site)

            cancel_event = asyncio.Event()
            self._cancel_events[site_id] = cancel_event
            progress = _StartProgress()
            try:
                await self._transition(site, SiteStatus.STARTING)
                return await self._run_start(site, progress, cancel_event)
            except OperationCancelled as e:
                logger.info("site_start_cancelled", site_id=site_id, step=progress.step)
                await self._release_start_resources(site, progress)
                await self._transition(site, SiteStatus.STOPPED)
                raise e.with_context(site_id=site_id, step=progress.step)
            except Exception as e:
                error = e if isinstance(e, SiteboxError) else SiteboxError(
                    f"Unexpected failure: {e}", cause=e
                )
                error.with_context(site_id=site_id, step=progress.step)
                logger.error(
                    "site_start_failed",
                    site_id=site_id,
                    step=progress.step,
                    error=str(error),
                    error_type=type(e).__name__,
                )
                await self._release_start_resources(site, progress)
                if site.status is not SiteStatus.ERROR:
                    await self._transition(site, SiteStatus.ERROR, error=error)
                if error is e:
                    raise
                raise error from e
            finally:
                self._cancel_events.pop(site_id, None)

    async def _run_start(
        self, site: Site, progress: _StartProgress, cancel_event: asyncio.Event
    ) -> StartResult:
        notices: list[str] = []

        progress.step = "allocate_port"
        port = await self.ports.allocate(site.id, site.name, held=self._held_ports(site.id))
        progress.port_acquired = True
        if port != site.port:
            notices.append(f"Port changed from {site.port} to {port}")
            site.port = port
            self.store.save(site)
        _check_cancelled(cancel_event, progress.step)

        progress.step = "provision_database"
        database = await self.provisioner.ensure_available(
            site.database,
            site.database_version,
            site.effective_db_name,
            site_name=site.name,
            backend=site.backend,
            db_user=site.db_user,
            db_password=site.db_password,
            cancel_event=cancel_event,
        )
        notices.extend(database.notices)
        if database.engine is not site.database or database.version != site.database_version:
            # The provisioned engine replaces the request from here on
            site.database = database.engine
            site.database_version = database.version
            site.db_name = database.db_name
            self.store.save(site)
        _check_cancelled(cancel_event, progress.step)

        progress.step = "write_runtime_config"
        self.config_writer.write(site, database, self.site_url(site))

        progress.step = "start_backend"
        backend = self._backend_for(site)
        progress.backend = backend
        handle = await backend.start(site, self._on_backend_exit)
        _check_cancelled(cancel_event, progress.step)

        progress.step = "readiness_probe"
        await self.probe.wait_until_ready(
            self.probe_url(site),
            is_alive=lambda: handle.is_alive,
            cancel_event=cancel_event,
        )

        installed_now = False
        if not site.installed:
            progress.step = "install"
            outcome = await self.installer.install(site, self.probe_url(site))
            if outcome.ok:
                site.installed = True
                installed_now = outcome is InstallOutcome.INSTALLED
            else:
                notices.append(
                    f"Automatic install did not finish; complete it at "
                    f"{self.site_url(site)}/wp-admin/install.php"
                )

        progress.step = "mark_running"
        site.last_accessed_at = datetime.now(UTC)
        await self._transition(site, SiteStatus.RUNNING)
        logger.info(
            "site_started",
            site_id=site.id,
            port=site.port,
            database=site.database.value,
            backend=site.backend.value,
        )
        return StartResult(site=site, notices=notices, installed_now=installed_now)

    async def _release_start_resources(self, site: Site, progress: _StartProgress) -> None:
        if progress.backend is not None:
            try:
                await progress.backend.stop(site.id)
            except Exception as e:
                logger.warning("start_rollback_backend_failed", site_id=site.id, error=str(e))
        if progress.port_acquired:
            await self.ports.release(site.id)

    # -- stop ----------------------------------------------------------------

    async def stop(self, site_id: str) -> Site:
        """Stop a site. Stopping a STOPPED site is a no-op.

        A site still STARTING gets its start cancelled; the start then leaves
        it STOPPED.
        """
        with bound_contextvars(site_id=site_id, operation="stop"):
            return await self._stop(site_id)

    async def _stop(self, site_id: str) -> Site:
        site = self.get(site_id)
        if site.status is SiteStatus.STARTING:
            event = self._cancel_events.get(site_id)
            if event is not None:
                logger.info("site_start_cancel_requested", site_id=site_id)
                event.set()

        async with self._lock_for(site_id):
            site = self.get(site_id)
            await self._stop_locked(site)
            return site

    async def _stop_locked(self, site: Site) -> None:
        if site.status is SiteStatus.STOPPED:
            logger.debug("site_already_stopped", site_id=site.id)
            return

        backend = self.backends.get(site.backend)

        if site.status is SiteStatus.ERROR:
            # Tear down whatever a failed start or crash left behind
            if backend is not None:
                try:
                    await backend.stop(site.id)
                except Exception as e:
                    logger.warning("error_teardown_failed", site_id=site.id, error=str(e))
            await self.ports.release(site.id)
            await self._transition(site, SiteStatus.STOPPED)
            return

        await self._transition(site, SiteStatus.STOPPING)
        try:
            if backend is not None:
                await backend.stop(site.id)
        except Exception as e:
            error = SiteboxError(
                f"Failed to stop backend: {e}", site_id=site.id, step="stop_backend", cause=e
            )
            await self.ports.release(site.id)
            await self._transition(site, SiteStatus.ERROR, error=error)
            raise error from e

        await self.ports.release(site.id)
        await self._transition(site, SiteStatus.STOPPED)
        logger.info("site_stopped", site_id=site.id)

    async def _on_backend_exit(self, site_id: str, exit_code: int | None) -> None:
        """Backend exited without a stop request."""
        with bound_contextvars(site_id=site_id, operation="backend_exit"):
            await self._handle_backend_exit(site_id, exit_code)

    async def _handle_backend_exit(self, site_id: str, exit_code: int | None) -> None:
        async with self._lock_for(site_id):
            site = self._sites.get(site_id)
            if site is None or site.status is not SiteStatus.RUNNING:
                logger.debug(
                    "backend_exit_ignored",
                    site_id=site_id,
                    status=site.status.value if site else None,
                )
                return

            if exit_code == 0:
                await self._transition(site, SiteStatus.STOPPED)
            else:
                error = SiteboxError(
                    f"Backend exited unexpectedly (exit code {exit_code})",
                    site_id=site_id,
                    step="backend_exit",
                )
                await self._transition(site, SiteStatus.ERROR, error=error)
            await self.ports.release(site_id)
            logger.warning("site_backend_exited", site_id=site_id, exit_code=exit_code)

    # -- delete --------------------------------------------------------------

    async def delete(self, site_id: str) -> None:
        """Delete a site; unknown ids are a no-op.

        The record is removed last so an interrupted delete can be re-run.
        """
        with bound_contextvars(site_id=site_id, operation="delete"):
            await self._delete(site_id)

    async def _delete(self, site_id: str) -> None:
        site = self._sites.get(site_id)
        if site is None:
            logger.debug("site_delete_noop", site_id=site_id)
            return
        if site.status is SiteStatus.STARTING:
            event = self._cancel_events.get(site_id)
            if event is not None:
                event.set()

        async with self._lock_for(site_id):
            site = self._sites.get(site_id)
            if site is None:
                return
            log = logger.bind(site_id=site_id, site_name=site.name)

            await self._stop_locked(site)

            backend = self.backends.get(site.backend)
            if backend is not None:
                try:
                    await backend.cleanup(site)
                except Exception as e:
                    log.warning("delete_backend_cleanup_failed", error=str(e))

            try:
                await asyncio.to_thread(self.store.purge_contents, site)
            except OSError as e:
                raise SiteboxError(
                    f"Failed to remove site files: {e}",
                    site_id=site_id,
                    step="remove_files",
                    cause=e,
                ) from e

            await self.ports.remove(site_id)

            try:
                await self.hosts.remove_entries_for_site(site_id)
            except Exception as e:
                log.warning("hosts_entry_remove_failed", error=str(e))

            try:
                await asyncio.to_thread(self.store.delete, site)
            except OSError as e:
                raise SiteboxError(
                    f"Failed to remove site record: {e}",
                    site_id=site_id,
                    step="remove_record",
                    cause=e,
                ) from e

            async with self._registry_lock:
                self._sites.pop(site_id, None)
            log.info("site_deleted")

        self._site_locks.pop(site_id, None)

    # -- URL mode ------------------------------------------------------------

    async def set_url_mode(self, non_admin: bool) -> list[str]:
        """Switch every site between localhost URLs and custom-domain URLs.

        Returns:
            Names of sites whose configuration was rewritten
        """
        self.non_admin_mode = non_admin
        updated = []
        for site in self.list_sites():
            async with self._lock_for(site.id):
                try:
                    if self.config_writer.rewrite_urls(site, self.site_url(site)):
                        updated.append(site.name)
                except OSError as e:
                    logger.warning("url_rewrite_failed", site_id=site.id, error=str(e))

                if non_admin:
                    try:
                        await self.hosts.remove_entries_for_site(site.id)
                    except Exception as e:
                        logger.warning("hosts_entry_remove_failed", site_id=site.id, error=str(e))
                else:
                    await self._register_host(site)

        logger.info("url_mode_changed", non_admin=non_admin, sites_updated=len(updated))
        return updated

    async def _register_host(self, site: Site) -> None:
        try:
            await self.hosts.add_entry(site.id, site.domain)
        except Exception as e:
            logger.warning("hosts_entry_add_failed", site_id=site.id, error=str(e))

    # -- maintenance ---------------------------------------------------------

    async def cleanup_broken_sites(self) -> CleanupReport:
        """Remove site directories that have no loadable record."""
        report = CleanupReport()
        known = {s.path.resolve() for s in self._sites.values()}

        for path in await asyncio.to_thread(self.store.list_broken_dirs):
            if path.resolve() in known:
                report.kept.append(path.name)
                continue
            try:
                await asyncio.to_thread(self.store.remove_dir, path)
                report.cleaned.append(path.name)
                logger.info("broken_site_removed", path=str(path))
            except OSError as e:
                logger.warning("broken_site_remove_failed", path=str(path), error=str(e))
                report.kept.append(path.name)

        dropped = await self.ports.cleanup_unused_allocations(keep=set(self._sites))
        report.ports_dropped = [a.port for a in dropped]

        container_backend = self.backends.get(BackendKind.CONTAINER)
        if isinstance(container_backend, ContainerBackend):
            report.orphan_groups = await self._remove_orphan_groups(container_backend)
        return report

    async def _remove_orphan_groups(self, backend: ContainerBackend) -> list[str]:
        """Remove container groups labeled for sites that no longer exist."""
        try:
            managed = await backend.list_managed_sites()
        except docker.errors.DockerException as e:
            logger.warning("orphan_scan_failed", error=str(e))
            return []

        removed = []
        for site_id in sorted(managed - set(self._sites)):
            try:
                await backend.cleanup_site(site_id)
                removed.append(site_id)
                logger.info("orphan_group_removed", site_id=site_id)
            except SiteboxError as e:
                logger.warning("orphan_group_remove_failed", site_id=site_id, error=str(e))
        return removed

    async def shutdown(self) -> None:
        """Stop every running site, then the backends and shared engines."""
        for site in self.list_sites():
            if site.status is SiteStatus.STOPPED:
                continue
            try:
                await self.stop(site.id)
            except SiteboxError as e:
                logger.warning("site_shutdown_failed", site_id=site.id, error=str(e))

        for backend in self.backends.values():
            try:
                await backend.shutdown()
            except Exception as e:
                logger.warning("backend_shutdown_failed", kind=backend.kind.value, error=str(e))

        await self.provisioner.engines.stop_all()
        logger.info("orchestrator_shutdown")


def _check_cancelled(cancel_event: asyncio.Event, step: str) -> None:
    if cancel_event.is_set():
        raise OperationCancelled(f"Start cancelled during {step}", step=step)
