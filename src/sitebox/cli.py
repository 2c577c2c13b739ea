import asyncio
import json as json_lib
import signal

import httpx
from rich.console import Console
from rich.table import Table
import typer

from sitebox.config import get_settings
from sitebox.database.engines import DatabaseEngineManager
from sitebox.errors import SiteboxError
from sitebox.logging_config import setup_logging
from sitebox.main import build_orchestrator
from sitebox.models import (
    AdminCredentials,
    BackendKind,
    CreateSiteRequest,
    DatabaseKind,
    SiteStatus,
)
from sitebox.orchestrator import SiteOrchestrator

app = typer.Typer(
    name="sitebox",
    help="Provision and supervise local WordPress sites",
    add_completion=False,
)
engines_app = typer.Typer()
app.add_typer(engines_app, name="engines", help="Manage local database engines")
console = Console()

STATUS_COLORS = {
    SiteStatus.RUNNING: "green",
    SiteStatus.STARTING: "yellow",
    SiteStatus.STOPPING: "yellow",
    SiteStatus.STOPPED: "dim",
    SiteStatus.ERROR: "red",
}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    log_format: str = typer.Option(None, "--log-format", help="console or json"),
):
    """SiteBox command line."""
    settings = get_settings()
    setup_logging(
        log_format=log_format or settings.log_format,
        log_level="DEBUG" if verbose else settings.log_level,
    )


async def _load() -> SiteOrchestrator:
    orchestrator = build_orchestrator()
    await orchestrator.initialize()
    return orchestrator


def _resolve(orchestrator: SiteOrchestrator, id_or_name: str):
    site = orchestrator.find(id_or_name)
    if site is None:
        console.print(f"[bold red]Error:[/bold red] no site named {id_or_name!r}")
        raise typer.Exit(1)
    return site


def _fail(error: SiteboxError) -> typer.Exit:
    console.print(f"[bold red]Error:[/bold red] {error.message}")
    if error.step:
        console.print(f"  step: {error.step}")
    if error.cause is not None:
        console.print(f"  cause: {type(error.cause).__name__}: {error.cause}")
    return typer.Exit(1)


def _print_notices(notices: list[str]) -> None:
    for notice in notices:
        console.print(f"[yellow]![/yellow] {notice}")


@app.command()
def create(
    name: str = typer.Argument(..., help="Site name"),
    domain: str = typer.Option(None, "--domain", "-d", help="Custom domain (default <name>.local)"),
    title: str = typer.Option(None, "--title", help="Site title"),
    php_version: str = typer.Option("8.2", "--php", help="PHP version"),
    app_version: str = typer.Option("latest", "--wp-version", help="WordPress version"),
    backend: BackendKind = typer.Option(BackendKind.NATIVE, "--backend", "-b"),
    database: DatabaseKind = typer.Option(DatabaseKind.MYSQL, "--database", "--db"),
    database_version: str = typer.Option(None, "--db-version", help="Database engine version"),
    admin_user: str = typer.Option("admin", "--admin-user"),
    admin_email: str = typer.Option("admin@localhost.test", "--admin-email"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Create a new site. It stays stopped until `sitebox up`."""
    try:
        request = CreateSiteRequest(
            name=name,
            domain=domain,
            title=title,
            php_version=php_version,
            app_version=app_version,
            backend=backend,
            database=database,
            database_version=database_version,
            admin=AdminCredentials(user=admin_user, email=admin_email),
        )
    except ValueError as e:
        console.print(f"[bold red]Invalid request:[/bold red] {e}")
        raise typer.Exit(1) from e

    async def _create():
        orchestrator = await _load()
        site = await orchestrator.create(request)
        return site, orchestrator.site_url(site)

    try:
        site, url = asyncio.run(_create())
    except SiteboxError as e:
        raise _fail(e) from e

    if json_output:
        typer.echo(site.model_dump_json(indent=2))
        return

    console.print("[bold green]✓ Site created![/bold green]")
    console.print(f"ID: [cyan]{site.id}[/cyan]")
    console.print(f"Path: {site.path}")
    console.print(f"URL: [magenta]{url}[/magenta]")
    console.print(f"Admin: {site.admin.user} / {site.admin.password}")
    console.print(f"Start it with [cyan]sitebox up {site.name}[/cyan]")


@app.command("list")
def list_sites(json_output: bool = typer.Option(False, "--json", help="Output as JSON")):
    """List all sites."""

    async def _list():
        orchestrator = await _load()
        return [(site, orchestrator.site_url(site)) for site in orchestrator.list_sites()]

    sites = asyncio.run(_list())

    if json_output:
        typer.echo(json_lib.dumps([s.model_dump(mode="json") for s, _ in sites], indent=2))
        return

    if not sites:
        console.print("No sites yet. Create one with [cyan]sitebox create <name>[/cyan]")
        return

    table = Table(title="Sites")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="magenta")
    table.add_column("Status")
    table.add_column("Port", justify="right")
    table.add_column("Backend")
    table.add_column("Database")
    table.add_column("URL")
    for site, url in sites:
        color = STATUS_COLORS[site.status]
        table.add_row(
            site.id,
            site.name,
            f"[{color}]{site.status.value}[/{color}]",
            str(site.port),
            site.backend.value,
            site.database.value,
            url,
        )
    console.print(table)


@app.command()
def status(
    site: str = typer.Argument(..., help="Site id or name"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show a site's status with a live backend check."""

    async def _status():
        orchestrator = await _load()
        return await orchestrator.status(_resolve(orchestrator, site).id)

    report = asyncio.run(_status())

    if json_output:
        typer.echo(report.model_dump_json(indent=2))
        return

    color = STATUS_COLORS[report.status]
    console.print(f"[bold]Site: {report.name} ({report.site_id})[/bold]")
    console.print(f"Status: [{color}]{report.status.value}[/{color}]")
    console.print(f"URL: {report.url}")
    console.print(f"Backend: {report.backend.value} (alive: {report.backend_alive})")
    console.print(f"Database: {report.database.value}")
    if report.last_error:
        console.print(f"Last error: [red]{report.last_error}[/red]")


@app.command()
def up(site: str = typer.Argument(..., help="Site id or name")):
    """Start a site and keep it running until interrupted."""

    async def _up() -> int:
        orchestrator = await _load()
        target = _resolve(orchestrator, site)
        stop_requested = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_requested.set)
            except NotImplementedError:
                pass

        try:
            result = await orchestrator.start(target.id)
            console.print(
                f"[bold green]✓ {target.name} running at "
                f"{orchestrator.site_url(result.site)}[/bold green] (Ctrl+C to stop)"
            )
            _print_notices(result.notices)
            if result.installed_now:
                console.print(
                    f"Admin: {result.site.admin.user} / {result.site.admin.password}"
                )

            while not stop_requested.is_set() and target.status is SiteStatus.RUNNING:
                try:
                    await asyncio.wait_for(stop_requested.wait(), timeout=1.0)
                except TimeoutError:
                    continue

            if target.status is SiteStatus.ERROR:
                console.print(
                    f"[bold red]Site stopped unexpectedly:[/bold red] {target.last_error}"
                )
                return 1
            return 0
        finally:
            await orchestrator.shutdown()

    try:
        code = asyncio.run(_up())
    except SiteboxError as e:
        raise _fail(e) from e
    if code:
        raise typer.Exit(code)


@app.command()
def stop(site: str = typer.Argument(..., help="Site id or name")):
    """Stop a site (container sites, or reset a site stuck in error)."""

    async def _stop():
        orchestrator = await _load()
        return await orchestrator.stop(_resolve(orchestrator, site).id)

    try:
        stopped = asyncio.run(_stop())
    except SiteboxError as e:
        raise _fail(e) from e
    console.print(f"[green]✓[/green] {stopped.name} is {stopped.status.value}")


@app.command()
def delete(
    site: str = typer.Argument(..., help="Site id or name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a site and all of its files."""
    if not yes:
        typer.confirm(f"Delete site {site!r} and all of its files?", abort=True)

    async def _delete():
        orchestrator = await _load()
        target = orchestrator.find(site)
        if target is None:
            return None
        await orchestrator.delete(target.id)
        return target.name

    try:
        name = asyncio.run(_delete())
    except SiteboxError as e:
        raise _fail(e) from e
    if name is None:
        console.print(f"No site named {site!r}; nothing to delete")
    else:
        console.print(f"[green]✓[/green] Deleted {name}")


@app.command()
def ports(json_output: bool = typer.Option(False, "--json", help="Output as JSON")):
    """Show the port allocation table."""

    async def _ports():
        orchestrator = await _load()
        return orchestrator.ports.list_allocations()

    allocations = asyncio.run(_ports())

    if json_output:
        typer.echo(
            json_lib.dumps(
                [a.model_dump(by_alias=True, mode="json") for a in allocations], indent=2
            )
        )
        return

    table = Table(title="Port allocations")
    table.add_column("Port", justify="right", style="cyan")
    table.add_column("Site", style="magenta")
    table.add_column("In use")
    table.add_column("Allocated at")
    for allocation in allocations:
        table.add_row(
            str(allocation.port),
            allocation.site_name or allocation.site_id,
            "yes" if allocation.in_use else "no",
            allocation.allocated_at.isoformat(timespec="seconds"),
        )
    console.print(table)


@app.command()
def cleanup():
    """Remove broken site directories and stale port allocations."""

    async def _cleanup():
        orchestrator = await _load()
        return await orchestrator.cleanup_broken_sites()

    report = asyncio.run(_cleanup())
    for name in report.cleaned:
        console.print(f"[green]✓[/green] Removed broken site directory {name}")
    for name in report.kept:
        console.print(f"[yellow]![/yellow] Kept {name}")
    if report.ports_dropped:
        dropped = ", ".join(map(str, report.ports_dropped))
        console.print(f"Dropped stale port allocations: {dropped}")
    for site_id in report.orphan_groups:
        console.print(f"[green]✓[/green] Removed orphaned containers of site {site_id}")
    if not (report.cleaned or report.kept or report.ports_dropped or report.orphan_groups):
        console.print("Nothing to clean up")


@app.command("url-mode")
def url_mode(
    mode: str = typer.Argument(..., help="'localhost' or 'domain'"),
):
    """Switch site URLs between localhost:<port> and <domain>:<port>."""
    if mode not in ("localhost", "domain"):
        console.print("[bold red]Error:[/bold red] mode must be 'localhost' or 'domain'")
        raise typer.Exit(1)

    async def _switch():
        orchestrator = await _load()
        return await orchestrator.set_url_mode(non_admin=mode == "localhost")

    updated = asyncio.run(_switch())
    console.print(f"[green]✓[/green] URL mode set to {mode}; updated {len(updated)} site(s)")


@engines_app.command("list")
def engines_list(json_output: bool = typer.Option(False, "--json", help="Output as JSON")):
    """List installed and downloadable database engines."""
    engines = DatabaseEngineManager(get_settings())
    installed = [(kind.value, version) for kind, version in engines.installed_versions()]
    available = engines.available_downloads()

    if json_output:
        payload = {
            "installed": [{"engine": k, "version": v} for k, v in installed],
            "available": available,
        }
        typer.echo(json_lib.dumps(payload, indent=2))
        return

    table = Table(title="Database engines")
    table.add_column("Engine", style="magenta")
    table.add_column("Version", style="cyan")
    table.add_column("Installed")
    for kind, versions in available.items():
        for version in versions:
            mark = "[green]yes[/green]" if (kind, version) in installed else "no"
            table.add_row(kind, version, mark)
    console.print(table)


@engines_app.command("install")
def engines_install(
    engine: DatabaseKind = typer.Argument(..., help="mysql or mariadb"),
    version: str = typer.Argument(..., help="Version from the download catalog"),
):
    """Download and unpack a database engine."""
    engines = DatabaseEngineManager(get_settings())

    def _progress(done: int, total: int | None) -> None:
        if total:
            console.print(f"\r{done * 100 // total}%", end="")

    try:
        path = asyncio.run(engines.install(engine, version, progress=_progress))
    except SiteboxError as e:
        raise _fail(e) from e
    except httpx.HTTPError as e:
        console.print(f"\n[bold red]Download failed:[/bold red] {e}")
        raise typer.Exit(1) from e
    console.print(f"\n[bold green]✓ Installed {engine.value} {version}[/bold green] at {path}")


if __name__ == "__main__":
    app()
