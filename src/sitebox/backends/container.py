"""Container backend: a database container plus an application container.

Both containers join a dedicated per-site network. Every resource is labeled
with the owning site id; listing, stopping and cleanup go through label
queries instead of parsing names.
"""

import asyncio

import docker
import structlog

from sitebox.backends.base import Backend, BackendHandle, ExitCallback
from sitebox.backends.docker_ops import DockerClientWrapper
from sitebox.config import Settings
from sitebox.errors import (
    BackendSpawnError,
    BackendUnresponsive,
    PollTimeout,
    RootMissing,
    TeardownPartialFailure,
)
from sitebox.models import DEFAULT_ENGINE_VERSIONS, BackendKind, DatabaseKind, Site
from sitebox.polling import poll_until

logger = structlog.get_logger()

SERVICE_DB = "db"
SERVICE_APP = "app"


def network_name(site_name: str) -> str:
    return f"sitebox_{site_name}"


def db_container_name(site_name: str) -> str:
    return f"sitebox_{site_name}_db"


def app_container_name(site_name: str) -> str:
    return f"sitebox_{site_name}_app"


def db_volume_name(site_name: str) -> str:
    return f"sitebox_{site_name}_dbdata"


class ContainerBackend(Backend):
    """Runs each site as a labeled container group."""

    kind = BackendKind.CONTAINER

    def __init__(self, docker_ops: DockerClientWrapper, settings: Settings) -> None:
        self.docker = docker_ops
        self.settings = settings
        self.label_prefix = settings.docker_label_prefix
        self._handles: dict[str, BackendHandle] = {}
        self._watchers: dict[str, asyncio.Task] = {}

    # -- labels --------------------------------------------------------------

    def labels_for(self, site: Site, service: str) -> dict[str, str]:
        return {
            f"{self.label_prefix}.managed": "true",
            f"{self.label_prefix}.site": site.id,
            f"{self.label_prefix}.site-name": site.name,
            f"{self.label_prefix}.service": service,
        }

    def _site_filter(self, site_id: str, service: str | None = None) -> dict[str, list[str]]:
        labels = [f"{self.label_prefix}.site={site_id}"]
        if service:
            labels.append(f"{self.label_prefix}.service={service}")
        return {"label": labels}

    async def _find_service(self, site_id: str, service: str):
        containers = await self.docker.list_containers(
            filters=self._site_filter(site_id, service), all=True
        )
        return containers[0] if containers else None

    # -- images --------------------------------------------------------------

    def db_image(self, site: Site) -> str:
        kind = site.database if not site.database.is_file_based else DatabaseKind.MYSQL
        version = site.database_version or DEFAULT_ENGINE_VERSIONS[kind]
        return self.settings.container_db_images[kind.value].format(version=version)

    def app_image(self, site: Site) -> str:
        return self.settings.container_app_image.format(php_version=site.php_version)

    # -- environment ---------------------------------------------------------

    async def create_environment(self, site: Site) -> BackendHandle:
        """Create and start the whole container group for a site.

        Order: network, database container, application container, start the
        database, wait for it to accept connections, start the application.

        Raises:
            BackendSpawnError: If a docker call fails
            BackendUnresponsive: If the database never becomes ready
        """
        log = logger.bind(site_id=site.id, site_name=site.name)
        db_image = self.db_image(site)
        app_image = self.app_image(site)

        try:
            await self.docker.ensure_image(db_image)
            await self.docker.ensure_image(app_image)

            network = await self.docker.get_network(network_name(site.name))
            if network is None:
                network = await self.docker.create_network(
                    network_name(site.name), labels=self.labels_for(site, "network")
                )
                log.info("network_created", network=network_name(site.name))

            await self.docker.create_volume(
                db_volume_name(site.name), labels=self.labels_for(site, "volume")
            )

            db = await self.docker.create_container(
                db_image,
                name=db_container_name(site.name),
                environment={
                    "MYSQL_ROOT_PASSWORD": site.db_password,
                    "MYSQL_DATABASE": site.effective_db_name,
                    "MYSQL_USER": site.db_user,
                    "MYSQL_PASSWORD": site.db_password,
                    "MARIADB_ROOT_PASSWORD": site.db_password,
                },
                volumes={db_volume_name(site.name): {"bind": "/var/lib/mysql", "mode": "rw"}},
                network=network_name(site.name),
                labels=self.labels_for(site, SERVICE_DB),
                detach=True,
            )
            log.info("db_container_created", container=db.name, image=db_image)

            app = await self.docker.create_container(
                app_image,
                name=app_container_name(site.name),
                environment={
                    "WORDPRESS_DB_HOST": f"{db_container_name(site.name)}:3306",
                    "WORDPRESS_DB_NAME": site.effective_db_name,
                    "WORDPRESS_DB_USER": site.db_user,
                    "WORDPRESS_DB_PASSWORD": site.db_password,
                },
                ports={"80/tcp": (self.settings.loopback_host, site.port)},
                volumes={str(site.document_root): {"bind": "/var/www/html", "mode": "rw"}},
                network=network_name(site.name),
                labels=self.labels_for(site, SERVICE_APP),
                detach=True,
            )
            log.info("app_container_created", container=app.name, image=app_image)
        except docker.errors.DockerException as e:
            log.error("container_environment_failed", error=str(e), error_type=type(e).__name__)
            raise BackendSpawnError(
                f"Failed to create container environment: {e}",
                site_id=site.id,
                step="create_environment",
                cause=e,
            ) from e

        return await self._start_group(site, db.id, app.id)

    async def _start_group(self, site: Site, db_id: str, app_id: str) -> BackendHandle:
        try:
            await self.docker.start_container(db_id)
        except docker.errors.DockerException as e:
            raise BackendSpawnError(
                f"Failed to start database container: {e}",
                site_id=site.id,
                step="start_database_container",
                cause=e,
            ) from e

        await self.wait_for_database(site, db_id)

        try:
            await self.docker.start_container(app_id)
        except docker.errors.DockerException as e:
            raise BackendSpawnError(
                f"Failed to start application container: {e}",
                site_id=site.id,
                step="start_app_container",
                cause=e,
            ) from e

        handle = BackendHandle(
            site_id=site.id,
            kind=self.kind,
            port=site.port,
            container_ids=[db_id, app_id],
        )
        self._handles[site.id] = handle
        logger.info("container_group_started", site_id=site.id, port=site.port)
        return handle

    async def wait_for_database(self, site: Site, db_id: str) -> None:
        """Poll the database with its own admin client until it answers."""
        admin = "mariadb-admin" if site.database is DatabaseKind.MARIADB else "mysqladmin"
        cmd = [admin, "ping", "-h", "127.0.0.1", "-uroot", f"-p{site.db_password}", "--silent"]

        async def _check() -> bool:
            state = await self.docker.container_state(db_id)
            if not state or not state.get("Running"):
                return False
            exit_code, _ = await self.docker.exec_in_container(db_id, cmd)
            return exit_code == 0

        logger.info("waiting_for_db_container", site_id=site.id)
        try:
            await poll_until(
                _check,
                max_attempts=self.settings.container_db_wait_attempts,
                interval=self.settings.container_db_wait_interval,
                description="db_container_ready",
                retry_on=(docker.errors.APIError,),
            )
        except PollTimeout as e:
            raise BackendUnresponsive(
                "Database container did not become ready",
                attempts=e.attempts,
                last_error_code=type(e.last_error).__name__ if e.last_error else None,
                last_error_message=str(e.last_error) if e.last_error else None,
                site_id=site.id,
                step="wait_for_database",
            ) from e

    # -- Backend contract ----------------------------------------------------

    async def start(self, site: Site, on_exit: ExitCallback) -> BackendHandle:
        handle = self._handles.get(site.id)
        if handle and handle.is_alive and not handle.stopping:
            logger.warning("container_group_already_running", site_id=site.id)
            return handle

        if not site.document_root.is_dir():
            raise RootMissing(
                f"Document root does not exist: {site.document_root}",
                site_id=site.id,
                step="start_backend",
            )

        if not await self.docker.ping():
            raise BackendSpawnError(
                "Docker daemon is not reachable", site_id=site.id, step="start_backend"
            )

        db = await self._find_service(site.id, SERVICE_DB)
        app = await self._find_service(site.id, SERVICE_APP)
        if db is not None and app is not None:
            logger.info("reusing_container_group", site_id=site.id)
            handle = await self._start_group(site, db.id, app.id)
        else:
            if db is not None or app is not None:
                # Half-built group from an interrupted run
                await self.cleanup_site(site.id)
            handle = await self.create_environment(site)

        self._watchers[site.id] = asyncio.create_task(self._watch(handle, on_exit))
        return handle

    async def stop(self, site_id: str) -> None:
        handle = self._handles.get(site_id)
        if handle:
            handle.stopping = True
        watcher = self._watchers.pop(site_id, None)
        if watcher:
            watcher.cancel()

        containers = await self.docker.list_containers(filters=self._site_filter(site_id))
        # Application first so it never outlives its database
        service_label = f"{self.label_prefix}.service"
        containers.sort(key=lambda c: 0 if c.labels.get(service_label) == SERVICE_APP else 1)
        for container in containers:
            try:
                await self.docker.stop_container(
                    container.id, timeout=self.settings.container_stop_timeout
                )
                logger.info("container_stopped", site_id=site_id, container=container.name)
            except docker.errors.NotFound:
                continue

        if handle:
            handle.exited.set()
            self._handles.pop(site_id, None)

    async def wait_exited(self, site_id: str, timeout: float) -> bool:
        # stop() only returns once the containers have stopped
        return True

    async def is_running(self, site: Site) -> bool:
        app = await self._find_service(site.id, SERVICE_APP)
        if app is None:
            return False
        state = await self.docker.container_state(app.id)
        return bool(state and state.get("Running"))

    async def cleanup(self, site: Site) -> None:
        await self.stop(site.id)
        await self.cleanup_site(site.id)

    async def cleanup_site(self, site_id: str) -> None:
        """Remove every container, volume and network labeled for a site.

        Each removal is attempted even if an earlier one failed.

        Raises:
            TeardownPartialFailure: If any removal failed
        """
        errors: list[str] = []
        site_filter = self._site_filter(site_id)

        try:
            containers = await self.docker.list_containers(filters=site_filter, all=True)
        except docker.errors.DockerException as e:
            containers = []
            errors.append(f"list containers: {e}")
        for container in containers:
            try:
                await self.docker.remove_container(container.id, force=True, v=True)
                logger.info("container_removed", site_id=site_id, container=container.name)
            except docker.errors.DockerException as e:
                logger.warning("container_remove_failed", site_id=site_id, error=str(e))
                errors.append(f"container {container.name}: {e}")

        try:
            volumes = await self.docker.list_volumes(filters=site_filter)
        except docker.errors.DockerException as e:
            volumes = []
            errors.append(f"list volumes: {e}")
        for volume in volumes:
            try:
                await self.docker.remove_volume(volume.name, force=True)
                logger.info("volume_removed", site_id=site_id, volume=volume.name)
            except docker.errors.DockerException as e:
                logger.warning("volume_remove_failed", site_id=site_id, error=str(e))
                errors.append(f"volume {volume.name}: {e}")

        try:
            networks = await self.docker.list_networks(filters=site_filter)
        except docker.errors.DockerException as e:
            networks = []
            errors.append(f"list networks: {e}")
        for network in networks:
            try:
                await self.docker.remove_network(network.id)
                logger.info("network_removed", site_id=site_id, network=network.name)
            except docker.errors.DockerException as e:
                logger.warning("network_remove_failed", site_id=site_id, error=str(e))
                errors.append(f"network {network.name}: {e}")

        if errors:
            raise TeardownPartialFailure(
                f"Cleanup left {len(errors)} resource(s) behind",
                errors=errors,
                site_id=site_id,
                step="cleanup_site",
            )

    async def list_managed_sites(self) -> set[str]:
        """Site ids with at least one managed container (running or not)."""
        containers = await self.docker.list_containers(
            filters={"label": [f"{self.label_prefix}.managed=true"]}, all=True
        )
        return {
            c.labels[f"{self.label_prefix}.site"]
            for c in containers
            if f"{self.label_prefix}.site" in c.labels
        }

    async def shutdown(self) -> None:
        for site_id in list(self._handles):
            try:
                await self.stop(site_id)
            except docker.errors.DockerException as e:
                logger.warning("container_shutdown_failed", site_id=site_id, error=str(e))
        self.docker.close()

    def get_handle(self, site_id: str) -> BackendHandle | None:
        return self._handles.get(site_id)

    async def _watch(self, handle: BackendHandle, on_exit: ExitCallback) -> None:
        """Poll the application container and report an exit nobody asked for."""
        app_id = handle.container_ids[-1]
        while True:
            await asyncio.sleep(self.settings.container_watch_interval)
            try:
                state = await self.docker.container_state(app_id)
            except docker.errors.DockerException as e:
                logger.debug("container_watch_error", site_id=handle.site_id, error=str(e))
                continue
            if state and state.get("Running"):
                continue
            break

        handle.exit_code = state.get("ExitCode") if state else None
        handle.exited.set()
        self._watchers.pop(handle.site_id, None)
        if self._handles.get(handle.site_id) is handle:
            del self._handles[handle.site_id]

        logger.info("app_container_exited", site_id=handle.site_id, exit_code=handle.exit_code)
        if handle.stopping:
            return
        try:
            await on_exit(handle.site_id, handle.exit_code)
        except Exception as e:
            logger.error(
                "exit_callback_failed", site_id=handle.site_id, error=str(e), exc_info=True
            )
