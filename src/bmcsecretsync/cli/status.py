"""Status commands: status, status NAME."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel
from rich.table import Table

from ..registry import FileRegistry
from ..status import CONDITION_SYNCED, SyncStatusTracker
from ._common import SYNC_HOME, condition_icon, console, path_status_icon


def register_status_commands(main: click.Group) -> None:
    """Register the status command."""

    @main.command("status")
    @click.argument("name", required=False)
    @click.option("--home", default=SYNC_HOME, type=click.Path(), help="State directory.")
    @click.option("--port", default=7878, help="Daemon API port to query.")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def status(name: Optional[str], home: str, port: int, json_out: bool):
        """Show sync status for all credentials, or paths for one."""
        from ..daemon import get_daemon_status, is_running

        home_path = Path(home).expanduser()
        registry = FileRegistry(home_path)

        if name:
            record = SyncStatusTracker(registry).get(name)
            if record is None:
                console.print(f"[yellow]No sync status for {name}.[/]")
                sys.exit(1)
            if json_out:
                click.echo(record.model_dump_json(indent=2))
                return

            cond = record.condition(CONDITION_SYNCED)
            console.print()
            console.print(
                Panel(
                    f"{condition_icon(cond)} {cond.message if cond else ''}\n"
                    f"Paths: [bold]{record.successful_paths}[/]/{record.total_paths} synced, "
                    f"[bold]{record.failed_paths}[/] failed\n"
                    f"Last attempt: {record.last_sync_attempt or '[dim]never[/]'}",
                    title=f"[bold]{name}[/]",
                    border_style="bright_blue",
                )
            )
            table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
            table.add_column("Engine", style="cyan")
            table.add_column("Device", style="bold")
            table.add_column("Path")
            table.add_column("Status")
            table.add_column("Error", style="dim")
            for p in record.backend_paths:
                table.add_row(
                    p.engine or "-",
                    p.device_name,
                    p.path or "[dim]-[/]",
                    path_status_icon(p.sync_status),
                    p.error_message,
                )
            console.print(table)
            console.print()
            return

        statuses = registry.list_sync_statuses()
        daemon = get_daemon_status(port) if is_running(home_path) else None

        if json_out:
            click.echo(json.dumps(
                {
                    "daemon": daemon,
                    "credentials": [s.model_dump(mode="json") for s in statuses],
                },
                indent=2,
            ))
            return

        console.print()
        if daemon:
            console.print(
                f"  Daemon: [green]running[/] (PID {daemon.get('pid')}), "
                f"{daemon.get('passes_completed', 0)} passes, "
                f"{daemon.get('passes_failed', 0)} failed"
            )
        else:
            console.print("  Daemon: [dim]not running[/]")
        console.print()

        if not statuses:
            console.print("  [dim]No credentials synced yet.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Credential", style="bold")
        table.add_column("State")
        table.add_column("Synced", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("Last attempt", style="dim")
        for s in statuses:
            table.add_row(
                s.credential_ref,
                condition_icon(s.condition(CONDITION_SYNCED)),
                str(s.successful_paths),
                str(s.failed_paths),
                s.last_sync_attempt.isoformat() if s.last_sync_attempt else "never",
            )
        console.print(table)
        console.print()
