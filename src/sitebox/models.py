"""Data models for sites, port allocations and database engines."""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
import re
import secrets
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator

RECORD_FILENAME = "sitebox.json"
DOCROOT_DIRNAME = "wordpress"


class SiteStatus(str, Enum):
    """Lifecycle status of a site."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class BackendKind(str, Enum):
    """Execution strategy serving a site's traffic."""

    NATIVE = "native"
    CONTAINER = "container"


class DatabaseKind(str, Enum):
    """Database engines a site can run on."""

    MYSQL = "mysql"
    MARIADB = "mariadb"
    SQLITE = "sqlite"

    @property
    def is_file_based(self) -> bool:
        return self is DatabaseKind.SQLITE


DEFAULT_ENGINE_VERSIONS = {
    DatabaseKind.MYSQL: "8.0",
    DatabaseKind.MARIADB: "10.11",
    DatabaseKind.SQLITE: "3",
}


def sanitize_site_name(name: str) -> str:
    """Make a site name filesystem-safe."""
    cleaned = re.sub(r"[^a-z0-9_-]", "-", name.lower())
    cleaned = re.sub(r"-+", "-", cleaned)
    return cleaned.strip("-")


def generate_password(length: int = 16) -> str:
    return secrets.token_urlsafe(length)[:length]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AdminCredentials(BaseModel):
    """Credentials for the installed application's admin account."""

    user: str = "admin"
    password: str = Field(default_factory=generate_password)
    email: str = "admin@localhost.test"


class CreateSiteRequest(BaseModel):
    """Declarative request for a new site."""

    name: str = Field(..., description="Human-readable site name")
    domain: str | None = Field(default=None, description="Custom domain, defaults to <name>.local")
    title: str | None = Field(default=None, description="Site title used by the installer")
    php_version: str = "8.2"
    app_version: str = "latest"
    backend: BackendKind = BackendKind.NATIVE
    database: DatabaseKind = DatabaseKind.MYSQL
    database_version: str | None = None
    admin: AdminCredentials = Field(default_factory=AdminCredentials)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not sanitize_site_name(v):
            raise ValueError(f"Site name {v!r} has no filesystem-safe characters")
        return v

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip().lower()
        if not re.fullmatch(r"[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)*", v):
            raise ValueError(f"Invalid domain: {v!r}")
        return v


class Site(BaseModel):
    """Persisted site record.

    Unknown fields are ignored and optional fields default, so records written
    by older versions still load.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    name: str
    domain: str
    path: Path
    port: int
    php_version: str = "8.2"
    app_version: str = "latest"
    backend: BackendKind = BackendKind.NATIVE
    database: DatabaseKind = DatabaseKind.SQLITE
    requested_database: DatabaseKind | None = None
    database_version: str | None = None
    db_name: str | None = None
    db_user: str = "wordpress"
    db_password: str = Field(default_factory=generate_password)
    title: str | None = None
    admin: AdminCredentials = Field(default_factory=AdminCredentials)
    status: SiteStatus = SiteStatus.STOPPED
    last_error: str | None = None
    installed: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    last_accessed_at: datetime | None = None

    @property
    def document_root(self) -> Path:
        return self.path / DOCROOT_DIRNAME

    @property
    def record_path(self) -> Path:
        return self.path / RECORD_FILENAME

    @property
    def effective_db_name(self) -> str:
        return self.db_name or f"{self.name.replace('-', '_')}_db"

    def url(self, non_admin: bool) -> str:
        """Public URL: localhost in non-admin mode, custom domain otherwise."""
        host = "localhost" if non_admin else self.domain
        return f"http://{host}:{self.port}"


class PortAllocation(BaseModel):
    """Sticky port reservation for a site."""

    model_config = ConfigDict(populate_by_name=True)

    site_id: str = Field(alias="siteId")
    site_name: str = Field(default="", alias="siteName")
    port: int
    allocated_at: datetime = Field(default_factory=_utcnow, alias="allocatedAt")
    in_use: bool = Field(default=False, alias="inUse")


@dataclass
class DatabaseServerInstance:
    """A database server process shared by every site using (kind, version)."""

    kind: DatabaseKind
    version: str
    port: int
    install_path: Path
    process: asyncio.subprocess.Process | None = None
    started_by_us: bool = False
    verified: bool = False
    started_at: datetime = field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[DatabaseKind, str]:
        return (self.kind, self.version)

    @property
    def running(self) -> bool:
        # An instance adopted from an earlier run has no process handle
        if self.process is None:
            return not self.started_by_us
        return self.process.returncode is None


class StartResult(BaseModel):
    """Outcome of a successful start, with non-fatal notices attached."""

    site: Site
    notices: list[str] = Field(default_factory=list)
    installed_now: bool = False


class SiteStatusReport(BaseModel):
    """Status view combining the record with a live backend check."""

    site_id: str
    name: str
    status: SiteStatus
    url: str
    port: int
    backend: BackendKind
    database: DatabaseKind
    backend_alive: bool
    last_error: str | None = None
