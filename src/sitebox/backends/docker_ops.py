import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import docker
import structlog

logger = structlog.get_logger()


class DockerClientWrapper:
    """
    Async wrapper around blocking docker-py client.
    Abstracts Docker operations to allow mocking and non-blocking execution.
    """

    def __init__(self, max_workers: int = 5):
        self._client: docker.DockerClient | None = None
        self._executor = ThreadPoolExecutor(max_workers=max_workers)

    @property
    def client(self) -> docker.DockerClient:
        # Connect on first use so native-only runs never need a daemon
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def _run(self, func, *args, **kwargs):
        """Run blocking function in thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))

    async def ping(self) -> bool:
        """Check that the daemon is reachable."""
        try:
            return await self._run(lambda: self.client.ping())
        except docker.errors.DockerException as e:
            logger.debug("docker_unavailable", error=str(e))
            return False

    # -- networks ------------------------------------------------------------

    async def create_network(self, name: str, labels: dict[str, str]) -> Any:
        return await self._run(self.client.networks.create, name, driver="bridge", labels=labels)

    async def get_network(self, name: str) -> Any | None:
        try:
            return await self._run(self.client.networks.get, name)
        except docker.errors.NotFound:
            return None

    async def list_networks(self, filters: dict[str, Any] | None = None) -> list[Any]:
        return await self._run(self.client.networks.list, filters=filters)

    async def remove_network(self, network_id: str) -> None:
        try:
            network = await self._run(self.client.networks.get, network_id)
            await self._run(network.remove)
        except docker.errors.NotFound:
            pass

    # -- containers ----------------------------------------------------------

    async def create_container(self, image: str, **kwargs) -> Any:
        """Create (without starting) a container."""
        return await self._run(self.client.containers.create, image, **kwargs)

    async def get_container(self, container_id: str) -> Any:
        """Get a container by ID or name."""
        return await self._run(self.client.containers.get, container_id)

    async def list_containers(
        self, filters: dict[str, Any] | None = None, all: bool = False
    ) -> list[Any]:
        """List containers."""
        return await self._run(self.client.containers.list, all=all, filters=filters)

    async def start_container(self, container_id: str) -> None:
        container = await self.get_container(container_id)
        await self._run(container.start)

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        """Stop a container."""
        container = await self.get_container(container_id)
        await self._run(container.stop, timeout=timeout)

    async def remove_container(
        self, container_id: str, force: bool = False, v: bool = False
    ) -> None:
        """Remove a container."""
        # Use simple try/except for get in case it's already gone
        try:
            container = await self.get_container(container_id)
            await self._run(container.remove, force=force, v=v)
        except docker.errors.NotFound:
            pass

    async def inspect_container(self, container_id: str) -> dict[str, Any]:
        """Fetch fresh container attributes."""
        container = await self.get_container(container_id)
        return container.attrs

    async def container_state(self, container_id: str) -> dict[str, Any] | None:
        """Return the ``State`` block, or None when the container is gone."""
        try:
            attrs = await self.inspect_container(container_id)
        except docker.errors.NotFound:
            return None
        return attrs.get("State", {})

    async def exec_in_container(
        self, container_id: str, command: list[str] | str, user: str | None = None
    ) -> tuple[int, bytes]:
        """
        Execute a command in a running container.

        Args:
            container_id: ID of the container
            command: Command to run
            user: User to run command as (container default if None)

        Returns:
            Tuple of (exit_code, output_bytes)
        """
        container = await self.get_container(container_id)
        kwargs: dict[str, Any] = {"cmd": command}
        if user:
            kwargs["user"] = user
        # exec_run is blocking, run in executor
        return await self._run(container.exec_run, **kwargs)

    # -- volumes -------------------------------------------------------------

    async def create_volume(self, name: str, labels: dict[str, str]) -> Any:
        return await self._run(self.client.volumes.create, name=name, labels=labels)

    async def list_volumes(self, filters: dict[str, Any] | None = None) -> list[Any]:
        return await self._run(self.client.volumes.list, filters=filters)

    async def remove_volume(self, name: str, force: bool = False) -> None:
        try:
            volume = await self._run(self.client.volumes.get, name)
            await self._run(volume.remove, force=force)
        except docker.errors.NotFound:
            pass

    # -- images --------------------------------------------------------------

    async def image_exists(self, image: str) -> bool:
        """Check if an image exists locally."""
        try:
            await self._run(self.client.images.get, image)
            return True
        except docker.errors.ImageNotFound:
            return False

    async def pull_image(self, image: str) -> Any:
        """Pull an image."""
        logger.info("pulling_image", image=image)
        return await self._run(self.client.images.pull, image)

    async def ensure_image(self, image: str) -> None:
        if not await self.image_exists(image):
            await self.pull_image(image)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        if self._client is not None:
            self._client.close()
            self._client = None
