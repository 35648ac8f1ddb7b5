"""Shared utilities for all CLI command modules.

Provides the Rich console instance, logging setup, component wiring
and status formatting helpers used across every command.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from rich.console import Console

from .. import SYNC_HOME
from ..backend.cache import BackendCache
from ..events import EventRecorder
from ..metrics import MetricsCollector
from ..models import Condition, PathSyncStatus
from ..reconciler import SyncReconciler
from ..registry import FileRegistry
from ..status import SyncStatusTracker

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Send engine logs to stderr at INFO (or DEBUG when verbose)."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


@dataclass
class Components:
    """Everything a one-shot command needs to reconcile."""

    registry: FileRegistry
    cache: BackendCache
    tracker: SyncStatusTracker
    events: EventRecorder
    metrics: MetricsCollector
    reconciler: SyncReconciler

    def close(self) -> None:
        self.cache.close()


def build_components(home: Path, environ: Optional[dict] = None) -> Components:
    """Wire registry, cache, tracker, events and reconciler for a home directory."""
    registry = FileRegistry(home)
    metrics = MetricsCollector()
    events = EventRecorder(home)
    cache = BackendCache(registry, metrics=metrics, environ=environ)
    tracker = SyncStatusTracker(registry)
    reconciler = SyncReconciler(registry, cache, tracker=tracker, events=events, metrics=metrics)
    return Components(registry, cache, tracker, events, metrics, reconciler)


def condition_icon(condition: Optional[Condition]) -> str:
    """Rich markup for a Synced condition."""
    if condition is None:
        return "[dim]PENDING[/]"
    return {
        "AllPathsSynced": "[bold green]SYNCED[/]",
        "PartialSync": "[bold yellow]PARTIAL[/]",
        "SyncFailed": "[bold red]FAILED[/]",
    }.get(condition.reason, f"[dim]{condition.reason}[/]")


def path_status_icon(status: PathSyncStatus) -> str:
    return "[green]OK[/]" if status == PathSyncStatus.SUCCESS else "[red]FAIL[/]"


__all__ = [
    "SYNC_HOME",
    "Components",
    "build_components",
    "condition_icon",
    "console",
    "path_status_icon",
    "setup_logging",
]
