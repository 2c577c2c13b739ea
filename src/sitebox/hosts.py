"""Hostname registration collaborator.

Editing the system hosts file needs elevated rights and lives outside this
package. The orchestrator only depends on this small contract and treats
every call as best-effort.
"""

from typing import Protocol

import structlog

logger = structlog.get_logger()


class HostsRegistry(Protocol):
    async def add_entry(self, site_id: str, hostname: str, ip: str = "127.0.0.1") -> None: ...

    async def remove_entries_for_site(self, site_id: str) -> None: ...


class NullHostsRegistry:
    """Keeps entries in memory only (non-admin mode, tests)."""

    def __init__(self) -> None:
        self.entries: dict[str, list[tuple[str, str]]] = {}

    async def add_entry(self, site_id: str, hostname: str, ip: str = "127.0.0.1") -> None:
        site_entries = self.entries.setdefault(site_id, [])
        if (hostname, ip) not in site_entries:
            site_entries.append((hostname, ip))
        logger.debug("hosts_entry_recorded", site_id=site_id, hostname=hostname, ip=ip)

    async def remove_entries_for_site(self, site_id: str) -> None:
        removed = self.entries.pop(site_id, [])
        logger.debug("hosts_entries_removed", site_id=site_id, count=len(removed))
