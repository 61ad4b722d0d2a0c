"""slarti command line: check, deploy and query remote agents."""

import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from loguru import logger

from slarti import __version__
from slarti.remote.config import AgentConfig, DeploymentStateStore
from slarti.remote.connection import AgentSession
from slarti.remote.errors import AgentError
from slarti.remote.manager import AgentManager, HostStatus, describe_error
from slarti.remote.runtime import AgentRuntime

app = typer.Typer(help="Query and administer remote machines over SSH.", no_args_is_help=True)

T = TypeVar("T")


class InterceptHandler(logging.Handler):
    """Route stdlib logging records from library modules into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


def _manager(config_file: Optional[Path], artifact: Optional[Path] = None) -> AgentManager:
    config = AgentConfig.load(config_file)

    def on_progress(alias: str, message: str) -> None:
        typer.secho(f"[{alias}] {message}", fg=typer.colors.BRIGHT_BLACK, err=True)

    return AgentManager(
        config=config,
        store=DeploymentStateStore(),
        artifact=artifact,
        on_progress=on_progress,
    )


def _run(coro: Awaitable[T]) -> T:
    with AgentRuntime() as runtime:
        try:
            return runtime.run(coro)
        except AgentError as e:
            logger.debug(f"{type(e).__name__}: {e}")
            typer.secho(f"error: {describe_error(e)}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)


async def _with_session(
    manager: AgentManager,
    alias: str,
    user: Optional[str],
    fn: Callable[[AgentSession], Awaitable[T]],
) -> T:
    session = await manager.connect(alias, user)
    try:
        return await fn(session)
    finally:
        await session.terminate(manager.config.terminate_grace)


def _print_status(status: HostStatus) -> None:
    color = typer.colors.GREEN if status.ok else (
        typer.colors.YELLOW if status.needs_deploy else typer.colors.RED
    )
    typer.secho(f"{status.alias}: {status.state}: {status.message}", fg=color)
    if status.remote_path:
        typer.echo(f"  path: {status.remote_path}")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging on stderr"),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
):
    setup_logging(verbose)


@app.command()
def check(
    aliases: list[str] = typer.Argument(..., help="SSH host aliases"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Effective SSH user for the aliases"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="Path to config.json"),
):
    """Check whether the agent is installed and current."""
    manager = _manager(config_file)
    statuses = _run(manager.check_all([(alias, user) for alias in aliases]))
    for status in statuses:
        _print_status(status)
    if any(s.state in ("unreachable", "error") for s in statuses):
        raise typer.Exit(1)


@app.command()
def deploy(
    alias: str = typer.Argument(..., help="SSH host alias"),
    user: Optional[str] = typer.Option(None, "--user", "-u"),
    artifact: Optional[Path] = typer.Option(None, "--artifact", help="Agent file to upload instead of the bundled one"),
    config_file: Optional[Path] = typer.Option(None, "--config"),
):
    """Upload and install the agent."""
    manager = _manager(config_file, artifact)
    status = _run(manager.deploy(alias, user))
    _print_status(status)
    if not status.ok:
        raise typer.Exit(1)


@app.command()
def info(
    alias: str = typer.Argument(..., help="SSH host alias"),
    user: Optional[str] = typer.Option(None, "--user", "-u"),
    config_file: Optional[Path] = typer.Option(None, "--config"),
):
    """Show system information reported by the agent."""
    manager = _manager(config_file)

    async def fetch(session: AgentSession):
        return await session.sys_info(), await session.static_config()

    sys_info, static = _run(_with_session(manager, alias, user, fetch))
    typer.echo(f"hostname: {sys_info.hostname}")
    typer.echo(f"os:       {sys_info.os} ({sys_info.arch})")
    typer.echo(f"kernel:   {sys_info.kernel}")
    typer.echo(f"uptime:   {sys_info.uptime_secs}s")
    typer.echo(f"cpus:     {static.cpu_count}")
    typer.echo(f"memory:   {static.mem_total_bytes // (1024 * 1024)} MiB")
    if static.os_release:
        pretty = [l for l in static.os_release.splitlines() if l.startswith("PRETTY_NAME=")]
        if pretty:
            release = pretty[0].split("=", 1)[1].strip("\"'")
            typer.echo(f"release:  {release}")


@app.command()
def services(
    alias: str = typer.Argument(..., help="SSH host alias"),
    user: Optional[str] = typer.Option(None, "--user", "-u"),
    config_file: Optional[Path] = typer.Option(None, "--config"),
):
    """List service-manager units."""
    manager = _manager(config_file)

    async def fetch(session: AgentSession):
        return await session.services_list()

    units = _run(_with_session(manager, alias, user, fetch))
    if not units:
        typer.echo("no services (no service manager?)")
        return
    for unit in units:
        enabled = {True: "enabled", False: "disabled", None: "-"}[unit.enabled]
        typer.echo(f"{unit.name:<40} {unit.active_state:<10} {unit.sub_state:<10} {enabled:<9} {unit.description or ''}")


@app.command("ls")
def list_dir(
    alias: str = typer.Argument(..., help="SSH host alias"),
    path: str = typer.Argument("~/", help="Remote directory"),
    max_entries: Optional[int] = typer.Option(None, "--max", min=0, help="Entries per page"),
    skip: int = typer.Option(0, "--skip", min=0, help="Entries to skip"),
    user: Optional[str] = typer.Option(None, "--user", "-u"),
    config_file: Optional[Path] = typer.Option(None, "--config"),
):
    """List a remote directory (directories first)."""
    manager = _manager(config_file)

    async def fetch(session: AgentSession):
        return await session.list_dir(path, max=max_entries, skip=skip)

    page = _run(_with_session(manager, alias, user, fetch))
    for entry in page.entries:
        kind = "DIR " if entry.is_dir else "FILE"
        size = "" if entry.size is None else str(entry.size)
        typer.echo(f"{kind}\t{size:>10}\t{entry.name}")
    if not page.eof:
        typer.secho(f"... more entries, use --skip {skip + len(page.entries)}", err=True)


@app.command()
def status():
    """Show the recorded deployment state of every alias."""
    states = DeploymentStateStore().list()
    if not states:
        typer.echo("no deployments recorded")
        return
    for state in states:
        reach = "reachable" if state.reachable else "unreachable"
        typer.echo(
            f"{state.alias}: {state.version or '-'} at {state.remote_path or '-'} "
            f"({reach}, deployed {state.deployed_at or 'never'})"
        )


if __name__ == "__main__":
    app()
