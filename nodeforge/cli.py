"""Command line entry point.

    nodeforge up [--workers N]   exit 0 ready, 1 degraded, 2 fatal
    nodeforge down               destroy every machine (idempotent)
    nodeforge status             list machines and their states
    nodeforge inventory          print the INI inventory of a running cluster
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import replace
from pathlib import Path

from loguru import logger
from rich.console import Console
from rich.table import Table

from nodeforge.api import ClusterReport, ProvisionedMachine
from nodeforge.config import Settings, build_executor, resolve_settings
from nodeforge.convergence.engine import ConvergenceEngine
from nodeforge.convergence.transport import RemoteExecutor
from nodeforge.core.exceptions import (
    ConfigurationError,
    IncompleteTopologyError,
    InvalidSpecError,
    NodeforgeError,
    OrchestrationCancelled,
    ProvisioningError,
)
from nodeforge.inventory import build_inventory, render_inventory
from nodeforge.logging import setup_logging, teardown_logging
from nodeforge.orchestrator import ClusterOrchestrator

EXIT_READY = 0
EXIT_DEGRADED = 1
EXIT_FATAL = 2

type Handler = Callable[[Settings, argparse.Namespace, Console], Awaitable[int]]

_STATE_STYLE = {
    "converged": "green",
    "running": "green",
    "failed": "red",
    "skipped": "yellow",
}


async def _assemble(settings: Settings) -> tuple[ClusterOrchestrator, RemoteExecutor]:
    provider = await settings.provider.create_provider()
    executor = build_executor(settings)
    engine = ConvergenceEngine(executor, settings.convergence)
    orchestrator = ClusterOrchestrator(
        provider, engine, settings.topology, settings.tasks, settings.orchestrator,
    )
    return orchestrator, executor


def _report_table(report: ClusterReport) -> Table:
    table = Table(title=f"cluster {report.status}")
    table.add_column("host")
    table.add_column("ip")
    table.add_column("role")
    table.add_column("state")
    table.add_column("changed", justify="right")
    table.add_column("reason")
    by_name = {m.name: m for m in report.machines}
    for host, outcome in report.run.outcomes.items():
        machine = by_name.get(host)
        style = _STATE_STYLE.get(outcome.state, "")
        table.add_row(
            host,
            machine.ip if machine else "",
            machine.spec.role if machine else "",
            f"[{style}]{outcome.state}[/{style}]" if style else outcome.state,
            str(outcome.changed),
            outcome.reason,
        )
    return table


def _machines_table(machines: Sequence[ProvisionedMachine]) -> Table:
    table = Table(title="machines")
    for column in ("name", "id", "ip", "role", "memory", "vcpus", "state"):
        table.add_column(column)
    for m in machines:
        table.add_row(
            m.name, m.id, m.ip, m.spec.role,
            f"{m.spec.memory_mb} MB", str(m.spec.vcpus), m.state,
        )
    return table


async def _up(settings: Settings, args: argparse.Namespace, console: Console) -> int:
    orchestrator, executor = await _assemble(settings)
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
    try:
        report = await orchestrator.up()
    except (ProvisioningError, InvalidSpecError, IncompleteTopologyError) as e:
        console.print(f"[red]provisioning failed:[/red] {e}")
        return EXIT_FATAL
    except OrchestrationCancelled as e:
        console.print(f"[yellow]{e}[/yellow]")
        return EXIT_FATAL
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        await executor.close()

    console.print(_report_table(report))
    if report.is_ready:
        return EXIT_READY
    console.print(f"[red]failed hosts:[/red] {', '.join(report.failed_hosts)}")
    return EXIT_DEGRADED


async def _down(settings: Settings, args: argparse.Namespace, console: Console) -> int:
    orchestrator, executor = await _assemble(settings)
    try:
        destroyed = await orchestrator.down()
    finally:
        await executor.close()
    if destroyed:
        console.print(f"destroyed {', '.join(m.name for m in destroyed)}")
    else:
        console.print("nothing to destroy")
    return 0


async def _status(settings: Settings, args: argparse.Namespace, console: Console) -> int:
    orchestrator, executor = await _assemble(settings)
    try:
        machines = await orchestrator.status()
    finally:
        await executor.close()
    if not machines:
        console.print("no machines")
        return 0
    console.print(_machines_table(machines))
    return 0


async def _inventory(settings: Settings, args: argparse.Namespace, console: Console) -> int:
    orchestrator, executor = await _assemble(settings)
    try:
        machines = await orchestrator.status()
    finally:
        await executor.close()
    try:
        entries = build_inventory(machines)
    except IncompleteTopologyError as e:
        console.print(f"[red]{e}[/red]")
        return EXIT_FATAL
    sys.stdout.write(
        render_inventory(entries, user=settings.ssh.user, key_path=settings.ssh.key_path)
    )
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nodeforge",
        description="Provision a local multi-node cluster and converge its hosts.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to nodeforge.toml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    up = sub.add_parser("up", help="Create machines and converge them")
    up.add_argument("--workers", type=int, default=None, help="Override worker count")
    up.set_defaults(handler=_up)

    sub.add_parser("down", help="Destroy every machine").set_defaults(handler=_down)
    sub.add_parser("status", help="Show machines").set_defaults(handler=_status)
    sub.add_parser("inventory", help="Print the inventory").set_defaults(handler=_inventory)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    console = Console(stderr=False)

    try:
        settings = resolve_settings(
            config_path=args.config,
            worker_count=getattr(args, "workers", None),
        )
    except (ConfigurationError, InvalidSpecError) as e:
        console.print(f"[red]error:[/red] {e}")
        return EXIT_FATAL

    # Drop loguru's default stderr sink; setup_logging installs ours.
    logger.remove()
    log_config = replace(settings.logging, level="DEBUG") if args.verbose else settings.logging
    handlers = setup_logging(log_config)
    handler: Handler = args.handler
    try:
        return asyncio.run(handler(settings, args, console))
    except NodeforgeError as e:
        console.print(f"[red]error:[/red] {e}")
        return EXIT_FATAL
    except KeyboardInterrupt:
        return 130
    finally:
        teardown_logging(handlers)


if __name__ == "__main__":
    sys.exit(main())
