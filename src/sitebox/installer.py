"""First-run application installer.

Drives the application's own install form over HTTP. Failures are reported
as an outcome and never abort a start: the site still runs and the install
screen stays reachable in the browser.
"""

from enum import Enum

import httpx
import structlog

from sitebox.models import Site

logger = structlog.get_logger()

INSTALL_PATH = "/wp-admin/install.php?step=2"
SUCCESS_MARKER = "Success!"
ALREADY_INSTALLED_MARKER = "Already Installed"


class InstallOutcome(str, Enum):
    INSTALLED = "installed"
    ALREADY_INSTALLED = "already_installed"
    FAILED = "failed"

    @property
    def ok(self) -> bool:
        return self is not InstallOutcome.FAILED


class Installer:
    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self._transport = transport

    @staticmethod
    def build_form(site: Site) -> dict[str, str]:
        return {
            "weblog_title": site.title or site.name,
            "user_name": site.admin.user,
            "admin_password": site.admin.password,
            "admin_password2": site.admin.password,
            "admin_email": site.admin.email,
            "blog_public": "0",
        }

    async def install(self, site: Site, base_url: str) -> InstallOutcome:
        """POST the install form for ``site`` against ``base_url``."""
        url = base_url.rstrip("/") + INSTALL_PATH
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.post(url, data=self.build_form(site))
        except httpx.HTTPError as e:
            logger.warning(
                "install_request_failed",
                site_id=site.id,
                url=url,
                error=str(e),
                error_type=type(e).__name__,
            )
            return InstallOutcome.FAILED

        body = response.text
        if SUCCESS_MARKER in body:
            logger.info("site_installed", site_id=site.id, admin_user=site.admin.user)
            return InstallOutcome.INSTALLED
        if ALREADY_INSTALLED_MARKER in body:
            logger.info("site_already_installed", site_id=site.id)
            return InstallOutcome.ALREADY_INSTALLED

        logger.warning(
            "install_unexpected_response",
            site_id=site.id,
            status_code=response.status_code,
            body_preview=body[:200],
        )
        return InstallOutcome.FAILED
