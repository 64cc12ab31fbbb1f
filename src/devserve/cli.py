"""devserve CLI entry point."""

import asyncio
import logging
import threading
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from devserve.config import ClientAuth, ServerSettings
from devserve.reload import FileChange, FileChangeWatcher
from devserve.server import Launcher, ServerContainer, UnableToCompleteError
from devserve.treelog import LogLevel, TreeLogger
from devserve.webapp import LifecycleError, ReloadableApplication

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with rich handler."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )


def tree_logger() -> TreeLogger:
    return TreeLogger(logging.getLogger("devserve"))


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """devserve - reloading development server for ASGI web applications."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    setup_logging(verbose)


@cli.command()
@click.argument("app_root", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--port", default=8888, help="Port to bind to (0 picks a free port)")
@click.option("--bind", "bind_address", default=None, help="Address to bind to")
@click.option("--ssl", "use_ssl", is_flag=True, help="Serve over TLS")
@click.option("--keystore", type=click.Path(dir_okay=False), help="PEM file with key and certificate")
@click.option("--password", help="Keystore passphrase")
@click.option("--pwfile", type=click.Path(dir_okay=False), help="File holding the keystore passphrase")
@click.option(
    "--client-auth",
    type=click.Choice([c.value for c in ClientAuth], case_sensitive=False),
    default=ClientAuth.NONE.value,
    help="Client certificate policy",
)
@click.option(
    "--request-log-level",
    type=click.Choice([level.name for level in LogLevel], case_sensitive=False),
    default=LogLevel.INFO.name,
    help="Level of successful request log lines",
)
@click.option("--watch/--no-watch", default=True, help="Reload the web app when files change")
@click.option("--poll-interval", default=1.0, help="Seconds between file scans")
def serve(
    app_root: Path,
    port: int,
    bind_address: str | None,
    use_ssl: bool,
    keystore: str | None,
    password: str | None,
    pwfile: str | None,
    client_auth: str,
    request_log_level: str,
    watch: bool,
    poll_interval: float,
) -> None:
    """Serve the web application in APP_ROOT."""
    logger = tree_logger()
    launcher = Launcher(
        ServerSettings(
            bind_address=bind_address,
            keystore=keystore,
            keystore_password=password,
            client_auth=ClientAuth(client_auth.upper()),
            request_log_level=LogLevel[request_log_level.upper()],
        )
    )

    arguments = []
    if use_ssl:
        arguments.append("ssl")
    if pwfile:
        arguments.append(f"pwfile={pwfile}")
    if not launcher.process_arguments(logger, ",".join(arguments)):
        raise SystemExit(2)

    try:
        container = launcher.start(logger, port, app_root)
    except (LifecycleError, OSError, RuntimeError, ValueError) as e:
        console.print(f"[red]Unable to start the server: {escape(str(e))}[/red]")
        raise SystemExit(1) from e

    scheme = "https" if launcher.is_secure else "http"
    host = bind_address or "127.0.0.1"
    console.print(
        f"[bold green]Serving {app_root} on {scheme}://{host}:{container.port}[/bold green]"
    )

    try:
        if watch:
            asyncio.run(watch_and_refresh(container, app_root, poll_interval))
        else:
            threading.Event().wait()
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping...[/yellow]")
    finally:
        try:
            container.stop()
        except UnableToCompleteError as e:
            console.print(f"[red]{escape(str(e))}[/red]")


async def watch_and_refresh(container: ServerContainer, app_root: Path, poll_interval: float) -> None:
    """Refresh the container whenever watched files change."""
    watcher = FileChangeWatcher([app_root])

    async def on_change(changes: list[FileChange]) -> None:
        for change in changes[:5]:
            console.print(f"[dim]{change.change_type.value}: {change.path}[/dim]")
        try:
            await asyncio.to_thread(container.refresh)
        except UnableToCompleteError:
            console.print("[red]Reload failed; fix the error and save again[/red]")

    await watcher.watch_loop(on_change, poll_interval=poll_interval)


@cli.command()
@click.argument("app_root", type=click.Path(exists=True, file_okay=False, path_type=Path))
def check(app_root: Path) -> None:
    """Load the web application in APP_ROOT once without serving it."""
    webapp = ReloadableApplication(tree_logger(), app_root)
    try:
        webapp.start()
    except LifecycleError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise SystemExit(1) from e

    try:
        domain = webapp.domain
        path_table = Table(title=f"Search path (generation {domain.generation})")
        path_table.add_column("#", style="dim")
        path_table.add_column("Entry", style="cyan")
        path_table.add_column("Kind", style="green")
        for i, entry in enumerate(domain.search_path, 1):
            path_table.add_row(str(i), entry.url, "archive" if entry.is_archive else "directory")
        console.print(path_table)

        module_table = Table(title="Modules")
        module_table.add_column("Module", style="cyan")
        module_table.add_column("Source", style="green")
        module_table.add_column("Origin")
        for name, module in sorted(domain.modules.items()):
            source = "app" if domain.owns(module) else "host"
            module_table.add_row(name, source, getattr(module, "__file__", None) or "built-in")
        console.print(module_table)
        console.print(f"[green]Loaded {webapp.settings.entry_point}[/green]")
    finally:
        webapp.stop()


if __name__ == "__main__":
    cli()
