"""Daemon commands: run, stop."""

from __future__ import annotations

import os
import signal
import sys
from pathlib import Path

import click

from ._common import SYNC_HOME, console


def register_run_commands(main: click.Group) -> None:
    """Register the run and stop commands."""

    @main.command("run")
    @click.option("--home", default=SYNC_HOME, type=click.Path(), help="State directory.")
    @click.option("--port", default=7878, help="Status API port (default: 7878).")
    @click.option("--workers", default=2, help="Concurrent reconcile workers.")
    @click.option("--watch-interval", default=5, help="Seconds between change scans.")
    @click.option("--resync-interval", default=600, help="Seconds between full resyncs.")
    @click.option("--timeout", type=float, default=None, help="Per-pass store deadline in seconds.")
    def run(
        home: str,
        port: int,
        workers: int,
        watch_interval: int,
        resync_interval: int,
        timeout: float,
    ):
        """Run the synchronization daemon in the foreground.

        Watches the registry under HOME, reconciles changed credentials,
        resyncs everything periodically and serves status at
        http://127.0.0.1:<port>.
        """
        from ..daemon import DaemonConfig, DaemonService, is_running

        home_path = Path(home).expanduser()
        if is_running(home_path):
            console.print("[yellow]Daemon is already running.[/]")
            sys.exit(0)

        config = DaemonConfig(
            home=home_path,
            workers=workers,
            watch_interval=watch_interval,
            resync_interval=resync_interval,
            port=port,
            operation_timeout=timeout,
        )
        svc = DaemonService(config)

        console.print(f"\n  [green]Starting daemon[/] on port [cyan]{port}[/]")
        console.print(f"  Workers: {workers} | Watch: {watch_interval}s | Resync: {resync_interval}s")
        console.print(f"  Log: {config.log_file}")
        console.print(f"  PID: {os.getpid()}")
        console.print("  [dim]Ctrl+C to stop[/]\n")

        svc.start()
        svc.run_forever()

    @main.command("stop")
    @click.option("--home", default=SYNC_HOME, type=click.Path(), help="State directory.")
    def stop(home: str):
        """Stop the running daemon."""
        from ..daemon import PID_FILE, read_pid

        home_path = Path(home).expanduser()
        pid = read_pid(home_path)
        if pid is None:
            console.print("[yellow]Daemon is not running.[/]")
            return

        try:
            os.kill(pid, signal.SIGTERM)
            console.print(f"\n  [green]Sent SIGTERM to daemon (PID {pid})[/]\n")
        except ProcessLookupError:
            console.print("[yellow]Daemon process not found, cleaning up PID file.[/]")
            (home_path / PID_FILE).unlink(missing_ok=True)
