"""On-disk site records: one JSON file inside each site's root directory."""

import os
from pathlib import Path
import shutil

import structlog
from pydantic import ValidationError

from sitebox.models import RECORD_FILENAME, Site

logger = structlog.get_logger()


class SiteStore:
    def __init__(self, sites_dir: Path):
        self.sites_dir = sites_dir

    def site_dir(self, name: str) -> Path:
        return self.sites_dir / name

    def save(self, site: Site) -> None:
        """Write the record atomically (temp file + replace)."""
        site.path.mkdir(parents=True, exist_ok=True)
        tmp_path = site.record_path.with_suffix(".tmp")
        tmp_path.write_text(site.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, site.record_path)

    def load(self, site_dir: Path) -> Site | None:
        record = site_dir / RECORD_FILENAME
        if not record.is_file():
            return None
        try:
            return Site.model_validate_json(record.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as e:
            logger.warning("site_record_unreadable", path=str(record), error=str(e))
            return None

    def load_all(self) -> list[Site]:
        if not self.sites_dir.is_dir():
            return []
        sites = []
        for entry in sorted(self.sites_dir.iterdir()):
            if not entry.is_dir():
                continue
            site = self.load(entry)
            if site is not None:
                sites.append(site)
        logger.debug("site_records_loaded", count=len(sites))
        return sites

    def list_broken_dirs(self) -> list[Path]:
        """Site directories without a loadable record."""
        if not self.sites_dir.is_dir():
            return []
        return [
            entry
            for entry in sorted(self.sites_dir.iterdir())
            if entry.is_dir() and self.load(entry) is None
        ]

    def purge_contents(self, site: Site) -> None:
        """Remove everything under the site root except the record."""
        if not site.path.is_dir():
            return
        for entry in site.path.iterdir():
            if entry.name == RECORD_FILENAME:
                continue
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()

    def delete(self, site: Site) -> None:
        """Remove the record, then the (now empty) site directory."""
        site.record_path.unlink(missing_ok=True)
        if site.path.exists():
            shutil.rmtree(site.path)

    def remove_dir(self, path: Path) -> None:
        shutil.rmtree(path)
