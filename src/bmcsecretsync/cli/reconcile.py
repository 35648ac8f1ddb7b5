"""One-shot reconciliation: reconcile NAME... | --all."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.table import Table

from ._common import SYNC_HOME, build_components, console, setup_logging


def register_reconcile_commands(main: click.Group) -> None:
    """Register the reconcile command."""

    @main.command("reconcile")
    @click.argument("names", nargs=-1)
    @click.option("--all", "all_", is_flag=True, help="Reconcile every credential.")
    @click.option("--home", default=SYNC_HOME, type=click.Path(), help="State directory.")
    @click.option("--verbose", "-v", is_flag=True, help="Show engine logs.")
    def reconcile(names: tuple[str, ...], all_: bool, home: str, verbose: bool):
        """Run a single reconciliation pass for the given credentials.

        Exits non-zero when any pass hits a pass-fatal error.
        """
        if verbose:
            setup_logging(verbose=True)

        components = build_components(Path(home).expanduser())
        try:
            targets = list(names)
            if all_:
                targets = [c.name for c in components.registry.list_credentials()]
            if not targets:
                console.print("[yellow]Nothing to reconcile.[/] Pass NAME... or --all.")
                sys.exit(2)

            table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
            table.add_column("Credential", style="bold")
            table.add_column("Result")
            table.add_column("Next pass", style="dim")
            table.add_column("Detail", style="dim")

            failures = 0
            for name in targets:
                result = components.reconciler.reconcile(name)
                if not result.ok:
                    failures += 1
                events = components.events.recent(limit=1, obj=name)
                detail = str(result.error) if result.error else (
                    f"{events[0].reason}: {events[0].message}" if events else ""
                )
                table.add_row(
                    name,
                    "[green]OK[/]" if result.ok else "[red]ERROR[/]",
                    f"{int(result.requeue_after)}s" if result.requeue_after else "-",
                    detail,
                )

            console.print()
            console.print(table)
            console.print()
        finally:
            components.close()

        if failures:
            sys.exit(1)
