"""Persistent port registry.

Maps site id -> TCP port. Allocations are sticky: stopping a site only clears
``inUse`` so the same port comes back on the next start while it stays free.
A live bind-test is the definitive availability check, since the table itself
can go stale.
"""

import asyncio
from datetime import UTC, datetime
import json
import os
from pathlib import Path

import structlog

from sitebox.errors import NoAvailablePorts
from sitebox.models import PortAllocation

logger = structlog.get_logger()


class PortAllocator:
    """Allocates conflict-free ports for sites and persists the table as JSON."""

    def __init__(
        self,
        store_path: Path,
        range_start: int = 8000,
        range_end: int = 9000,
        reserved_ports: list[int] | None = None,
        bind_host: str = "127.0.0.1",
    ):
        if range_start > range_end:
            raise ValueError(f"Invalid port range {range_start}-{range_end}")
        self.store_path = store_path
        self.range_start = range_start
        self.range_end = range_end
        self.reserved_ports = set(reserved_ports or [])
        self.bind_host = bind_host
        self._lock = asyncio.Lock()
        self._allocations: dict[str, PortAllocation] = {}
        self._last_port = range_start
        self._load()

    # -- persistence ---------------------------------------------------------

    def _load(self) -> None:
        if not self.store_path.exists():
            return
        try:
            data = json.loads(self.store_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("port_table_unreadable", path=str(self.store_path), error=str(e))
            return

        for site_id, raw in (data.get("allocations") or {}).items():
            try:
                raw.setdefault("siteId", site_id)
                self._allocations[site_id] = PortAllocation.model_validate(raw)
            except ValueError as e:
                logger.warning("port_allocation_skipped", site_id=site_id, error=str(e))

        last_port = data.get("lastPort", self.range_start)
        if isinstance(last_port, int) and self.range_start <= last_port <= self.range_end:
            self._last_port = last_port

    def _save(self) -> None:
        payload = {
            "allocations": {
                site_id: allocation.model_dump(by_alias=True, mode="json")
                for site_id, allocation in self._allocations.items()
            },
            "lastPort": self._last_port,
        }
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.store_path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.store_path)

    # -- public API ----------------------------------------------------------

    async def allocate(
        self, site_id: str, site_name: str, held: set[int] | None = None
    ) -> int:
        """Allocate (or re-acquire) a port for a site and mark it in use.

        Args:
            site_id: Owning site
            site_name: Shown in the port table
            held: Ports owned by other active sites even if not marked in use

        Raises:
            NoAvailablePorts: If the entire range is exhausted
        """
        async with self._lock:
            existing = self._allocations.get(site_id)
            held = held or set()
            if existing and existing.port not in held and await self._can_reuse(existing):
                existing.in_use = True
                existing.site_name = site_name or existing.site_name
                self._save()
                logger.info("port_reused", site_id=site_id, port=existing.port)
                return existing.port

            port = await self._find_available_port(exclude_site=site_id, held=held)
            self._allocations[site_id] = PortAllocation(
                site_id=site_id,
                site_name=site_name,
                port=port,
                allocated_at=datetime.now(UTC),
                in_use=True,
            )
            self._save()

            if existing:
                logger.info(
                    "port_moved",
                    site_id=site_id,
                    old_port=existing.port,
                    new_port=port,
                )
            else:
                logger.info("port_allocated", site_id=site_id, site_name=site_name, port=port)
            return port

    async def release(self, site_id: str) -> None:
        """Clear ``inUse`` but keep the mapping so the port stays sticky."""
        async with self._lock:
            allocation = self._allocations.get(site_id)
            if allocation is None or not allocation.in_use:
                return
            allocation.in_use = False
            self._save()
            logger.info("port_released", site_id=site_id, port=allocation.port)

    async def remove(self, site_id: str) -> None:
        """Drop a site's allocation entirely (site deleted)."""
        async with self._lock:
            allocation = self._allocations.pop(site_id, None)
            if allocation is None:
                return
            self._save()
            logger.info("port_allocation_removed", site_id=site_id, port=allocation.port)

    def get_allocated_port(self, site_id: str) -> int | None:
        allocation = self._allocations.get(site_id)
        return allocation.port if allocation else None

    def get_allocation(self, site_id: str) -> PortAllocation | None:
        return self._allocations.get(site_id)

    def list_allocations(self) -> list[PortAllocation]:
        return sorted(self._allocations.values(), key=lambda a: a.port)

    async def cleanup_unused_allocations(
        self, keep: set[str] | None = None
    ) -> list[PortAllocation]:
        """Shrink the table: drop entries not in use whose port is bindable.

        Args:
            keep: Site ids whose allocations stay regardless

        Returns:
            The dropped allocations
        """
        async with self._lock:
            dropped = []
            for site_id, allocation in list(self._allocations.items()):
                if allocation.in_use or site_id in (keep or ()):
                    continue
                if await self.is_port_available(allocation.port):
                    dropped.append(self._allocations.pop(site_id))
                    logger.info(
                        "port_allocation_cleaned",
                        site_id=site_id,
                        site_name=allocation.site_name,
                        port=allocation.port,
                    )
            if dropped:
                self._save()
            return dropped

    async def is_port_available(self, port: int) -> bool:
        """Bind-test: open a listener on the port and close it immediately."""
        try:
            server = await asyncio.start_server(_reject_connection, self.bind_host, port)
        except OSError:
            return False
        server.close()
        await server.wait_closed()
        return True

    # -- internals -----------------------------------------------------------

    async def _can_reuse(self, allocation: PortAllocation) -> bool:
        held_elsewhere = any(
            other.in_use and other.port == allocation.port
            for other in self._allocations.values()
            if other.site_id != allocation.site_id
        )
        if held_elsewhere:
            return False
        if allocation.port in self.reserved_ports:
            return False
        return await self.is_port_available(allocation.port)

    def _scan_order(self) -> list[int]:
        start = self._last_port
        if not self.range_start <= start <= self.range_end:
            start = self.range_start
        return list(range(start, self.range_end + 1)) + list(range(self.range_start, start))

    async def _find_available_port(self, exclude_site: str, held: set[int]) -> int:
        others = [a for a in self._allocations.values() if a.site_id != exclude_site]
        in_use = {a.port for a in others if a.in_use} | held
        sticky = {a.port for a in others} | held
        order = self._scan_order()

        # First pass leaves other sites' sticky ports alone; second pass reclaims them
        for skip in (sticky | self.reserved_ports, in_use | self.reserved_ports):
            for port in order:
                if port in skip:
                    continue
                if await self.is_port_available(port):
                    self._last_port = port + 1 if port < self.range_end else self.range_start
                    return port

        raise NoAvailablePorts(
            f"No available ports in range {self.range_start}-{self.range_end}",
            step="allocate_port",
        )


async def _reject_connection(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    writer.close()
