"""Database provisioning with automatic downgrade to the file-based engine.

The provisioner walks an ordered list of strategies. Each returns a typed
outcome: ``Provisioned`` ends the walk, ``RetryableFailure`` moves on to the
next strategy (which is how an unreachable MySQL ends up on SQLite), and
``FatalFailure`` aborts.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from sitebox.config import Settings
from sitebox.database.engines import DatabaseEngineManager
from sitebox.errors import (
    EngineNotInstalled,
    EngineUnreachable,
    PollTimeout,
    SiteboxError,
)
from sitebox.models import DEFAULT_ENGINE_VERSIONS, BackendKind, DatabaseKind
from sitebox.polling import poll_until

logger = structlog.get_logger()

# Port the database listens on inside a site's container network
CONTAINER_DB_PORT = 3306


@dataclass
class ProvisionRequest:
    engine: DatabaseKind
    version: str
    db_name: str
    site_name: str
    db_user: str = "root"
    db_password: str = ""
    cancel_event: asyncio.Event | None = None


@dataclass
class ProvisionResult:
    """The database a site will actually use."""

    engine: DatabaseKind
    version: str | None
    db_name: str
    host: str = "127.0.0.1"
    port: int | None = None
    user: str = "root"
    password: str = ""
    downgraded: bool = False
    notices: list[str] = field(default_factory=list)

    @property
    def host_with_port(self) -> str:
        return f"{self.host}:{self.port}" if self.port else self.host


@dataclass
class Provisioned:
    result: ProvisionResult


@dataclass
class RetryableFailure:
    error: SiteboxError


@dataclass
class FatalFailure:
    error: SiteboxError


ProvisionOutcome = Provisioned | RetryableFailure | FatalFailure


class ProvisioningStrategy(ABC):
    engine: DatabaseKind

    @abstractmethod
    async def provision(self, request: ProvisionRequest) -> ProvisionOutcome: ...


class FileBasedStrategy(ProvisioningStrategy):
    """SQLite inside the site's own tree - nothing to start."""

    engine = DatabaseKind.SQLITE

    async def provision(self, request: ProvisionRequest) -> ProvisionOutcome:
        return Provisioned(
            ProvisionResult(
                engine=DatabaseKind.SQLITE,
                version=None,
                db_name=request.db_name,
                host="",
                user="",
            )
        )


class ServerEngineStrategy(ProvisioningStrategy):
    """Shared local MySQL/MariaDB server started on demand."""

    def __init__(
        self,
        engines: DatabaseEngineManager,
        engine: DatabaseKind,
        *,
        connect_attempts: int,
        connect_interval: float,
        start_attempts: int,
        start_interval: float,
        fallback_when_not_installed: bool = False,
    ):
        self.engines = engines
        self.engine = engine
        self.connect_attempts = connect_attempts
        self.connect_interval = connect_interval
        self.start_attempts = start_attempts
        self.start_interval = start_interval
        self.fallback_when_not_installed = fallback_when_not_installed

    async def provision(self, request: ProvisionRequest) -> ProvisionOutcome:
        try:
            instance = await self.engines.ensure_running(self.engine, request.version)
        except EngineNotInstalled as e:
            if self.fallback_when_not_installed:
                return RetryableFailure(e)
            return FatalFailure(e)
        except EngineUnreachable as e:
            return RetryableFailure(e)

        # A freshly spawned server gets the longer boot budget
        if instance.verified:
            attempts, interval = self.connect_attempts, self.connect_interval
        else:
            attempts, interval = self.start_attempts, self.start_interval

        try:
            await poll_until(
                lambda: self.engines.ping(instance),
                max_attempts=attempts,
                interval=interval,
                description=f"{self.engine.value}_connection",
                retry_on=(OSError,),
                cancel_event=request.cancel_event,
            )
        except (PollTimeout, EngineUnreachable) as e:
            if instance.started_by_us:
                await self.engines.discard(instance)
            cause = e.last_error if isinstance(e, PollTimeout) else e
            return RetryableFailure(
                EngineUnreachable(
                    f"{self.engine.value} {request.version} unreachable on port {instance.port}",
                    step="provision_database",
                    cause=cause,
                )
            )

        try:
            await self.engines.ensure_schema(instance, request.db_name)
        except EngineUnreachable as e:
            return RetryableFailure(e)

        return Provisioned(
            ProvisionResult(
                engine=self.engine,
                version=request.version,
                db_name=request.db_name,
                host="127.0.0.1",
                port=instance.port,
                user="root",
                password="",
            )
        )


class ContainerEngineStrategy(ProvisioningStrategy):
    """Database runs inside the site's own container group.

    The container backend creates and waits for it; this strategy only
    describes where the application will find it.
    """

    def __init__(self, engine: DatabaseKind, host_for: Callable[[str], str]):
        self.engine = engine
        self._host_for = host_for

    async def provision(self, request: ProvisionRequest) -> ProvisionOutcome:
        return Provisioned(
            ProvisionResult(
                engine=self.engine,
                version=request.version,
                db_name=request.db_name,
                host=self._host_for(request.site_name),
                port=CONTAINER_DB_PORT,
                user=request.db_user,
                password=request.db_password,
            )
        )


class DatabaseProvisioner:
    """Resolves a site's database requirement into a usable engine."""

    def __init__(self, engines: DatabaseEngineManager, settings: Settings):
        self.engines = engines
        self.settings = settings

    def strategies_for(
        self, requested: DatabaseKind, backend: BackendKind
    ) -> list[ProvisioningStrategy]:
        if requested.is_file_based:
            return [FileBasedStrategy()]

        if backend is BackendKind.CONTAINER:
            from sitebox.backends.container import db_container_name

            return [ContainerEngineStrategy(requested, db_container_name)]

        return [
            ServerEngineStrategy(
                self.engines,
                requested,
                connect_attempts=self.settings.db_connect_attempts,
                connect_interval=self.settings.db_connect_interval,
                start_attempts=self.settings.engine_start_attempts,
                start_interval=self.settings.engine_start_interval,
                fallback_when_not_installed=self.settings.fallback_when_not_installed,
            ),
            FileBasedStrategy(),
        ]

    async def ensure_available(
        self,
        requested: DatabaseKind,
        version: str | None,
        db_name: str,
        *,
        site_name: str,
        backend: BackendKind = BackendKind.NATIVE,
        db_user: str = "root",
        db_password: str = "",
        cancel_event: asyncio.Event | None = None,
    ) -> ProvisionResult:
        """Provision the requested engine, downgrading when it is unreachable.

        The returned result names the engine actually provisioned; callers must
        persist it in place of the request.

        Raises:
            EngineNotInstalled: Requested server engine missing (unless fallback enabled)
        """
        request = ProvisionRequest(
            engine=requested,
            version=version or DEFAULT_ENGINE_VERSIONS[requested],
            db_name=db_name,
            site_name=site_name,
            db_user=db_user,
            db_password=db_password,
            cancel_event=cancel_event,
        )
        notices: list[str] = []

        for strategy in self.strategies_for(requested, backend):
            outcome = await strategy.provision(request)

            if isinstance(outcome, Provisioned):
                result = outcome.result
                result.downgraded = result.engine is not requested
                result.notices = notices
                logger.info(
                    "database_provisioned",
                    site_name=site_name,
                    requested=requested.value,
                    engine=result.engine.value,
                    downgraded=result.downgraded,
                )
                return result

            if isinstance(outcome, FatalFailure):
                logger.error(
                    "database_provision_failed",
                    site_name=site_name,
                    engine=strategy.engine.value,
                    error=str(outcome.error),
                )
                raise outcome.error

            logger.warning(
                "database_strategy_failed",
                site_name=site_name,
                engine=strategy.engine.value,
                error=str(outcome.error),
            )
            notices.append(
                f"{strategy.engine.value} unavailable ({outcome.error.message}); "
                "falling back to the file-based database"
            )

        raise EngineUnreachable(
            f"No database strategy succeeded for {requested.value}",
            step="provision_database",
        )
