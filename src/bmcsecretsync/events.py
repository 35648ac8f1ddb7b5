"""
Outcome events -- the human-readable notifications a pass produces.

Each event names the object it concerns, a Normal/Warning type, a reason
keyword (Synced, PartialSync, SyncFailed, ...) and a message. Events are
kept in a bounded in-memory ring for the status API and, when a home
directory is given, appended to ``<home>/events.jsonl``.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("bmcsecretsync.events")

EVENT_LOG_NAME = "events.jsonl"

NORMAL = "Normal"
WARNING = "Warning"

REASON_SYNCED = "Synced"
REASON_PARTIAL_SYNC = "PartialSync"
REASON_SYNC_FAILED = "SyncFailed"
REASON_MISSING_CREDENTIALS = "MissingCredentials"
REASON_BACKEND_UNAVAILABLE = "BackendUnavailable"
REASON_NO_REFERENCE = "NoBMCReference"
REASON_NO_MATCHING_ENGINES = "NoMatchingEngines"
REASON_DISCOVERY_FAILED = "BMCDiscoveryFailed"
REASON_CLEANUP_FAILED = "CleanupFailed"
REASON_CONFIG_RELOADED = "ConfigReloaded"


class Event(BaseModel):
    """A single outcome notification."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    object: str
    type: str = NORMAL
    reason: str
    message: str = ""


class EventRecorder:
    """Records events to memory and optionally to a JSONL log.

    Args:
        home: Directory for the event log; None keeps events in memory only.
        capacity: Number of recent events kept in memory.
    """

    def __init__(self, home: Optional[Path] = None, capacity: int = 500) -> None:
        self.home = Path(home).expanduser() if home is not None else None
        self._lock = threading.Lock()
        self._recent: deque[Event] = deque(maxlen=capacity)

    @property
    def log_path(self) -> Optional[Path]:
        return self.home / EVENT_LOG_NAME if self.home is not None else None

    def event(self, obj: str, event_type: str, reason: str, message: str) -> Event:
        """Record an event.

        Args:
            obj: Name of the object the event concerns.
            event_type: NORMAL or WARNING.
            reason: Short CamelCase reason keyword.
            message: Human-readable detail.

        Returns:
            Event: The recorded entry.
        """
        entry = Event(object=obj, type=event_type, reason=reason, message=message)
        with self._lock:
            self._recent.append(entry)
            if self.home is not None:
                try:
                    self.home.mkdir(parents=True, exist_ok=True)
                    with self.log_path.open("a") as f:
                        f.write(entry.model_dump_json() + "\n")
                except OSError as exc:
                    logger.warning("Failed to append event to %s: %s", self.log_path, exc)

        level = logging.WARNING if event_type == WARNING else logging.INFO
        logger.log(level, "%s %s: %s", obj, reason, message)
        return entry

    def recent(self, limit: int = 0, obj: Optional[str] = None) -> list[Event]:
        """Recent events, newest first.

        Args:
            limit: Maximum entries to return (0 = all).
            obj: Only events about this object.
        """
        with self._lock:
            events = list(reversed(self._recent))
        if obj is not None:
            events = [e for e in events if e.object == obj]
        return events[:limit] if limit > 0 else events

    def reasons(self, obj: Optional[str] = None) -> list[str]:
        """Reason keywords in recording order (oldest first)."""
        return [e.reason for e in reversed(self.recent(obj=obj))]


def read_event_log(home: Path, limit: int = 0) -> list[Event]:
    """Parse the JSONL event log, newest first.

    Args:
        home: Directory holding ``events.jsonl``.
        limit: Maximum entries to return (0 = all).
    """
    path = Path(home).expanduser() / EVENT_LOG_NAME
    if not path.exists():
        return []
    entries: list[Event] = []
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(Event.model_validate_json(line))
        except ValueError:
            continue
    entries.reverse()
    return entries[:limit] if limit > 0 else entries
