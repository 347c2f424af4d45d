"""Command-line interface.

    flotilla start [N | M W]     create/start instances and converge the swarm
    flotilla scale [N | M W]     converge on a new topology
    flotilla stop                leave the swarm and power every instance off
    flotilla delete              destroy every instance
    flotilla vis | service | health | logs

``N`` alone means one manager and ``N - 1`` workers; ``M W`` are explicit
manager and worker counts; no counts keep the current shape.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

import click
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from flotilla import services
from flotilla.config import Settings, resolve_settings
from flotilla.core.exceptions import FlotillaError
from flotilla.logging import LogConfig, setup_logging
from flotilla.model import Diff, Topology
from flotilla.orchestrator import Orchestrator

console = Console()
err_console = Console(stderr=True)


@dataclass
class CliState:
    settings: Settings
    factory: Callable[[Settings], Orchestrator] = Orchestrator.from_settings
    _orchestrator: Orchestrator | None = field(default=None, repr=False)

    @property
    def orchestrator(self) -> Orchestrator:
        if self._orchestrator is None:
            self._orchestrator = self.factory(self.settings)
        return self._orchestrator


# =============================================================================
# Helpers
# =============================================================================


def _fail(message: str) -> NoReturn:
    err_console.print(f"[bold red]error:[/] {escape(message)}", highlight=False)
    raise SystemExit(1)


def _run[T](coro: Awaitable[T]) -> T:
    async def _main() -> T:
        return await coro

    try:
        return asyncio.run(_main())
    except FlotillaError as e:
        _fail(str(e))


def _topology(state: CliState, counts: tuple[int, ...]) -> Topology:
    current = _run(state.orchestrator.current()) if not counts else None
    try:
        return Topology.from_args(counts, current)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="COUNTS") from e


def _report(plan: Diff) -> None:
    if plan.missing:
        console.print(f"created: {', '.join(sorted(plan.missing))}")
    if plan.extra:
        console.print(f"removed: {', '.join(sorted(plan.extra))}")
    if plan.converged:
        console.print("instances already match the requested topology")


# =============================================================================
# Commands
# =============================================================================


@click.group()
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file (default: ./flotilla.toml merged over ~/.flotilla/defaults.toml).",
)
@click.option("-v", "--verbose", count=True, help="-v for INFO logs, -vv for DEBUG.")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also write DEBUG logs here.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: int, log_file: str | None) -> None:
    """Provision and scale a Docker Swarm cluster of docker-machine instances."""
    logger.remove()
    setup_logging(LogConfig.from_verbosity(verbose, log_file))

    if ctx.obj is None:
        try:
            ctx.obj = CliState(resolve_settings(path=config_path))
        except FlotillaError as e:
            _fail(str(e))


@cli.command()
@click.argument("counts", nargs=-1, type=click.IntRange(min=0))
@click.pass_obj
def start(state: CliState, counts: tuple[int, ...]) -> None:
    """Create or resume the cluster and converge it on COUNTS."""
    topology = _topology(state, counts)
    plan = _run(state.orchestrator.start(topology))
    _report(plan)
    console.print(
        f"cluster ready: {topology.managers} manager(s), {topology.workers} worker(s)\n"
        f"connect with: {state.orchestrator.connection_hint()}",
        highlight=False,
    )


@cli.command()
@click.argument("counts", nargs=-1, type=click.IntRange(min=0))
@click.pass_obj
def scale(state: CliState, counts: tuple[int, ...]) -> None:
    """Converge the cluster on COUNTS (keeps the current shape without COUNTS)."""
    topology = _topology(state, counts)
    plan = _run(state.orchestrator.scale(topology))
    _report(plan)
    console.print(f"cluster at {topology.managers} manager(s), {topology.workers} worker(s)")


@cli.command()
@click.pass_obj
def stop(state: CliState) -> None:
    """Leave the swarm and power off every instance (leader last)."""
    stopped = _run(state.orchestrator.stop())
    if stopped:
        console.print(f"stopped: {', '.join(stopped)}")
    else:
        console.print("nothing running")


@cli.command()
@click.pass_obj
def delete(state: CliState) -> None:
    """Destroy every cluster instance."""
    plan = _run(state.orchestrator.delete())
    if plan.extra:
        console.print(f"deleted: {', '.join(sorted(plan.extra))}")
    else:
        console.print("nothing to delete")


@cli.command()
@click.pass_obj
def vis(state: CliState) -> None:
    """Deploy the swarm visualizer and print its URL."""
    url = _run(services.deploy_visualizer(
        state.orchestrator, state.settings.visualizer, state.settings.timing,
    ))
    console.print(f"visualizer: {url}", highlight=False)


@cli.command()
@click.argument("name", required=False)
@click.argument("image", required=False)
@click.option("--replicas", type=click.IntRange(min=0), default=1, show_default=True)
@click.option("--publish", "-p", multiple=True, help="Port mapping, e.g. 80:80.")
@click.pass_obj
def service(
    state: CliState,
    name: str | None,
    image: str | None,
    replicas: int,
    publish: tuple[str, ...],
) -> None:
    """Create or scale service NAME running IMAGE; list services without arguments."""
    if name is None:
        rows = _run(services.list_services(state.orchestrator))
        table = Table("NAME", "MODE", "REPLICAS", "IMAGE", "PORTS")
        for row in rows:
            table.add_row(row.name, row.mode, row.replicas, row.image, row.ports)
        console.print(table)
        return
    if image is None:
        raise click.UsageError("IMAGE is required when NAME is given")

    created = _run(services.ensure_service(
        state.orchestrator, name, image, replicas=replicas, publish=publish,
    ))
    verb = "created" if created else "scaled"
    console.print(f"service {name} {verb} ({replicas} replica(s))")


@cli.command()
@click.pass_obj
def health(state: CliState) -> None:
    """Show every node with its instance state and swarm status."""
    rows = _run(services.health(state.orchestrator))
    table = Table("NAME", "POWER", "NODE ID", "ROLE", "AVAILABILITY", "STATUS")
    for row in rows:
        record = row.record
        leader = " (leader)" if record and record.leader else ""
        table.add_row(
            row.name,
            row.power.value,
            record.id if record else "-",
            f"{record.role.value}{leader}" if record else "-",
            record.availability.value if record else "-",
            record.state.value if record else "not a member",
        )
    console.print(table)


@cli.command()
@click.argument("service_name", metavar="SERVICE")
@click.option("--tail", type=click.IntRange(min=1), default=100, show_default=True)
@click.pass_obj
def logs(state: CliState, service_name: str, tail: int) -> None:
    """Print the last log lines of SERVICE."""
    output = _run(services.service_logs(state.orchestrator, service_name, tail=tail))
    click.echo(output)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
