"""Error taxonomy for site lifecycle operations."""


class SiteboxError(Exception):
    """Base error carrying enough context to diagnose without log correlation."""

    def __init__(
        self,
        message: str,
        *,
        site_id: str | None = None,
        step: str | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.site_id = site_id
        self.step = step
        self.cause = cause

    def with_context(self, site_id: str | None = None, step: str | None = None) -> "SiteboxError":
        """Fill in site id and step if not already set."""
        if self.site_id is None:
            self.site_id = site_id
        if self.step is None:
            self.step = step
        return self

    def describe(self) -> str:
        parts = [f"{type(self).__name__}: {self.message}"]
        if self.step:
            parts.append(f"step={self.step}")
        if self.site_id:
            parts.append(f"site={self.site_id}")
        if self.cause is not None:
            parts.append(f"cause={type(self.cause).__name__}: {self.cause}")
        return " ".join(parts)

    def __str__(self) -> str:
        return self.describe()


class NameConflict(SiteboxError):
    """A site with this name (or its directory) already exists."""


class SiteNotFound(SiteboxError):
    """No site registered under the given id."""


class InvalidTransition(SiteboxError):
    """Lifecycle transition not allowed from the current status."""


class NoAvailablePorts(SiteboxError):
    """The whole port range is exhausted."""


class RootMissing(SiteboxError):
    """The site's document root does not exist."""


class EngineNotInstalled(SiteboxError):
    """Requested database engine/version is not installed locally."""


class EngineUnreachable(SiteboxError):
    """Database engine did not accept connections within the retry budget."""


class BackendSpawnError(SiteboxError):
    """The backend process or container group could not be started."""


class BackendUnresponsive(SiteboxError):
    """Backend never answered the readiness probe."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        attempts: int = 0,
        last_error_code: str | None = None,
        last_error_message: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.url = url
        self.attempts = attempts
        self.last_error_code = last_error_code
        self.last_error_message = last_error_message

    def describe(self) -> str:
        base = super().describe()
        if self.last_error_code:
            base += f" last_error={self.last_error_code}: {self.last_error_message}"
        return base


class TeardownPartialFailure(SiteboxError):
    """Best-effort cleanup finished but some steps failed."""

    def __init__(self, message: str, *, errors: list[str] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or []


class OperationCancelled(SiteboxError):
    """A pending stop request aborted an in-flight start."""


class PollTimeout(SiteboxError):
    """poll_until ran out of attempts."""

    def __init__(self, message: str, *, attempts: int, last_error: BaseException | None, **kwargs):
        super().__init__(message, cause=last_error, **kwargs)
        self.attempts = attempts
        self.last_error = last_error
