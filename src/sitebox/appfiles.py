"""Fetches application files (WordPress core and the SQLite integration plugin)."""

import asyncio
from pathlib import Path
import tarfile
import zipfile

import httpx
import structlog

from sitebox.config import Settings
from sitebox.downloads import download_file, extract_archive
from sitebox.errors import SiteboxError
from sitebox.models import Site

logger = structlog.get_logger()


class ApplicationFetcher:
    """Downloads archives once into a cache and unpacks them per site."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self._transport = transport
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def cache_dir(self) -> Path:
        return self.settings.temp_dir / "cache"

    def app_url(self, version: str) -> str:
        if version in ("", "latest"):
            return self.settings.wordpress_latest_url
        return self.settings.wordpress_download_url.format(version=version)

    async def _cached(self, url: str) -> Path:
        dest = self.cache_dir / url.rsplit("/", 1)[-1]
        # Two sites created at once must not download the same archive twice
        lock = self._locks.setdefault(url, asyncio.Lock())
        async with lock:
            if dest.exists() and dest.stat().st_size > 0:
                logger.debug("download_cache_hit", url=url)
                return dest
            await download_file(
                url,
                dest,
                timeout=self.settings.download_timeout,
                transport=self._transport,
            )
        return dest

    async def fetch(self, site: Site) -> None:
        """Populate the site's document root.

        Raises:
            SiteboxError: If a download or extraction fails
        """
        step = "fetch_application"
        try:
            archive = await self._cached(self.app_url(site.app_version))
            await asyncio.to_thread(extract_archive, archive, site.document_root)
            logger.info("application_files_ready", site_id=site.id, version=site.app_version)

            step = "fetch_sqlite_plugin"
            plugin_archive = await self._cached(self.settings.sqlite_plugin_url)
            plugins_dir = site.document_root / "wp-content" / "plugins"
            await asyncio.to_thread(extract_archive, plugin_archive, plugins_dir, False)
            logger.info("sqlite_plugin_ready", site_id=site.id)
        except (httpx.HTTPError, OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            raise SiteboxError(
                f"Failed to fetch application files: {e}",
                site_id=site.id,
                step=step,
                cause=e,
            ) from e
