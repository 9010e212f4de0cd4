#!/usr/bin/env python3
"""
Flux reconcile with live feedback.

Runs `flux reconcile` for one object while streaming the object's
Kubernetes events, then waits until the object reports Ready.
"""

import argparse
import asyncio
import re
import signal
import sys
from typing import List, Optional, Sequence

from rich.console import Console
from rich.text import Text

from flux_monitor import (
    MONITORED_KINDS,
    CancelScope,
    EventNotice,
    FluxMonitorError,
    MonitorSession,
    MonitorSettings,
    MonitorSetupError,
    ReconcileCancelled,
    setup_logging,
    start,
)

DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class Printer:
    """Terminal output for reconcile progress."""

    def __init__(self, console: Optional[Console] = None, err_console: Optional[Console] = None):
        self.console = console or Console()
        self.err_console = err_console or Console(stderr=True)

    def command(self, args: Sequence[str]) -> None:
        line = Text("$ ", style="bold cyan")
        line.append(" ".join(args), style="bold")
        self.console.print(line)

    def event(self, notice: EventNotice) -> None:
        line = Text("  ")
        if notice.is_warning:
            line.append("⚠ ", style="bold yellow")
            line.append(notice.reason, style="bold yellow")
        else:
            line.append("• ", style="cyan")
            line.append(notice.reason, style="bold cyan")
        line.append(f": {notice.message}", style="yellow" if notice.is_warning else "")
        self.console.print(line)

    def waiting(self, kind: str, name: str) -> None:
        self.console.print(f"[dim]⏳ Waiting for {kind} [bold]{name}[/bold] to become ready...[/dim]")

    def success(self, kind: str, name: str) -> None:
        self.console.print(f"[bold green]✅ {kind} {name} reconciled successfully[/bold green]")

    def warning(self, message: str) -> None:
        self.err_console.print(f"[yellow]Warning: {message}[/yellow]")

    def error(self, message: str) -> None:
        self.err_console.print(f"[bold red]❌ {message}[/bold red]")


def parse_duration(value: str) -> float:
    """Parse seconds ("90", "2.5") or Go-style durations ("90s", "5m", "1m30s")."""
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        parts = DURATION_PART.findall(value)
        if not parts or "".join(n + u for n, u in parts) != value:
            raise argparse.ArgumentTypeError(f"invalid duration: {value!r}")
        seconds = sum(float(n) * DURATION_UNITS[u] for n, u in parts)
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"duration must be positive: {value!r}")
    return seconds


def build_command(flux_binary: str, kind: str, name: str, namespace: str) -> List[str]:
    """Build the flux reconcile command line for a kind."""
    if kind == "source":
        return [flux_binary, "reconcile", "source", "git", name, "-n", namespace]
    cmd = [flux_binary, "reconcile", kind, name, "-n", namespace]
    if kind in ("kustomization", "helmrelease"):
        cmd.append("--with-source")
    return cmd


def build_parser(settings: MonitorSettings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reconcile a Flux object and follow its progress")
    parser.add_argument("--kind", required=True, help="Resource kind (kustomization, helmrelease, source)")
    parser.add_argument("--name", required=True, help="Resource name")
    parser.add_argument("--namespace", default=settings.default_namespace, help="Namespace")
    parser.add_argument(
        "--wait",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Wait for reconciliation to complete",
    )
    parser.add_argument(
        "--timeout",
        type=parse_duration,
        default=settings.default_timeout,
        help="Timeout for the whole operation (e.g. 300, 90s, 5m)",
    )
    return parser


async def run_flux(command: Sequence[str], scope: CancelScope) -> int:
    """Run the command with inherited stdio; kill it if the scope is cancelled."""
    process = await asyncio.create_subprocess_exec(*command)
    try:
        return await scope.run(process.wait())
    except ReconcileCancelled:
        process.kill()
        await process.wait()
        raise


async def reconcile(args: argparse.Namespace, settings: MonitorSettings, printer: Printer) -> int:
    scope = CancelScope()
    scope.cancel_after(args.timeout)
    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        loop.add_signal_handler(sig, scope.cancel)

    session: Optional[MonitorSession] = None
    watcher: Optional[asyncio.Task] = None
    if args.kind in MONITORED_KINDS:
        try:
            session = start(args.kind, args.name, args.namespace, scope, printer.event, settings=settings)
        except MonitorSetupError as exc:
            printer.warning(f"Could not start event monitoring: {exc}")
        else:
            watcher = asyncio.create_task(session.run())

    try:
        command = build_command(settings.flux_binary, args.kind, args.name, args.namespace)
        printer.command(command)
        try:
            code = await run_flux(command, scope)
        except ReconcileCancelled:
            printer.error("Reconciliation cancelled")
            return 1
        except OSError as exc:
            printer.error(f"Error running flux: {exc}")
            return 1
        if code != 0:
            return code if code > 0 else 1

        if args.wait and session is not None:
            printer.waiting(args.kind, args.name)
            try:
                await session.wait_for_ready(args.timeout)
            except FluxMonitorError as exc:
                printer.error(f"Reconciliation failed or timed out: {exc}")
                return 1
            printer.success(args.kind, args.name)
        return 0
    finally:
        if session is not None:
            session.stop()
        if watcher is not None:
            await watcher
        scope.cancel()
        for sig in signals:
            loop.remove_signal_handler(sig)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    settings = MonitorSettings()
    parser = build_parser(settings)
    args = parser.parse_args(argv)
    if not args.kind.strip() or not args.name.strip():
        parser.exit(1, "Error: --kind and --name are required\n")
    setup_logging(settings.log_level)
    sys.exit(asyncio.run(reconcile(args, settings, Printer())))


if __name__ == "__main__":
    main()
