"""
bmcsecretsync daemon -- the always-on synchronization service.

Runs worker threads over a de-duplicating work queue, a watch loop that
enqueues credentials whose records (or referencing devices) changed, a
periodic resync of every credential, a backend-config watcher that
invalidates the cache, and a local HTTP API for status queries.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any, Optional

from . import SYNC_HOME
from .backend.base import OperationContext
from .backend.cache import BackendCache
from .backend.config import DEFAULT_BACKEND_CONFIG_NAME
from .errors import RegistryError
from .events import EventRecorder
from .metrics import MetricsCollector
from .reconciler import REQUEUE_ERROR, BackendConfigReconciler, SyncReconciler
from .registry import FileRegistry, Registry
from .status import SyncStatusTracker
from .workqueue import WorkQueue

logger = logging.getLogger("bmcsecretsync.daemon")

DEFAULT_PORT = 7878
PID_FILE = "daemon.pid"
LOG_DIR = "logs"


class DaemonConfig:
    """Configuration for the daemon process.

    Attributes:
        home: Registry and state directory.
        workers: Number of concurrent reconcile workers.
        watch_interval: Seconds between registry change scans.
        resync_interval: Seconds between full resyncs of every credential.
        port: HTTP API port for local queries.
        operation_timeout: Per-pass deadline for store calls (None = no deadline).
        log_file: Path for daemon log output.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        workers: int = 2,
        watch_interval: int = 5,
        resync_interval: int = 600,
        port: int = DEFAULT_PORT,
        operation_timeout: Optional[float] = None,
    ):
        self.home = Path(home or SYNC_HOME).expanduser()
        self.workers = max(1, workers)
        self.watch_interval = watch_interval
        self.resync_interval = resync_interval
        self.port = port
        self.operation_timeout = operation_timeout

        log_dir = self.home / LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = log_dir / "daemon.log"


class DaemonState:
    """Thread-safe mutable daemon state.

    All access is lock-protected.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.last_watch: Optional[datetime] = None
        self.last_resync: Optional[datetime] = None
        self.passes_completed: int = 0
        self.passes_failed: int = 0
        self.config_reloads: int = 0
        self.errors: list[str] = []
        self.running: bool = False

    def snapshot(self) -> dict:
        """Return a serializable snapshot of current state.

        Returns:
            Dict with all state fields, safe for JSON serialization.
        """
        with self._lock:
            return {
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "uptime_seconds": (
                    (datetime.now(timezone.utc) - self.started_at).total_seconds()
                    if self.started_at
                    else 0
                ),
                "last_watch": self.last_watch.isoformat() if self.last_watch else None,
                "last_resync": self.last_resync.isoformat() if self.last_resync else None,
                "passes_completed": self.passes_completed,
                "passes_failed": self.passes_failed,
                "config_reloads": self.config_reloads,
                "recent_errors": self.errors[-10:],
                "pid": os.getpid(),
            }

    def record_pass(self, ok: bool) -> None:
        with self._lock:
            self.passes_completed += 1
            if not ok:
                self.passes_failed += 1

    def record_watch(self) -> None:
        with self._lock:
            self.last_watch = datetime.now(timezone.utc)

    def record_resync(self) -> None:
        with self._lock:
            self.last_resync = datetime.now(timezone.utc)

    def record_config_reload(self) -> None:
        with self._lock:
            self.config_reloads += 1

    def record_error(self, error: str) -> None:
        """Record an error, keeping only the last 50."""
        with self._lock:
            ts = datetime.now(timezone.utc).isoformat()
            self.errors.append(f"[{ts}] {error}")
            if len(self.errors) > 50:
                self.errors = self.errors[-50:]


class DaemonService:
    """The synchronization daemon.

    Args:
        config: Daemon configuration.
        registry: Registry to reconcile (defaults to a FileRegistry under home).
        cache: Backend cache (defaults to one built over the registry).
    """

    def __init__(
        self,
        config: DaemonConfig,
        registry: Optional[Registry] = None,
        cache: Optional[BackendCache] = None,
    ):
        self.config = config
        self.state = DaemonState()
        self.registry = registry or FileRegistry(config.home)
        self.metrics = MetricsCollector()
        self.events = EventRecorder(config.home)
        self.cache = cache or BackendCache(self.registry, metrics=self.metrics)
        self.reconciler = SyncReconciler(
            self.registry,
            self.cache,
            tracker=SyncStatusTracker(self.registry),
            events=self.events,
            metrics=self.metrics,
        )
        self.config_reconciler = BackendConfigReconciler(
            self.registry, self.cache, events=self.events
        )
        self.queue = WorkQueue()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._server: Optional[HTTPServer] = None
        self._fingerprints: dict[str, str] = {}
        self._config_fingerprint: Optional[str] = None

    def start(self, install_signals: bool = True, serve_api: bool = True) -> None:
        """Start the daemon and all background workers.

        Args:
            install_signals: Register SIGTERM/SIGINT handlers (main thread only).
            serve_api: Start the local HTTP API.
        """
        self._write_pid()
        self._setup_logging()
        if install_signals:
            self._setup_signals()

        self.state.running = True
        self.state.started_at = datetime.now(timezone.utc)

        logger.info(
            "Daemon starting: home=%s port=%d workers=%d watch=%ds resync=%ds",
            self.config.home,
            self.config.port,
            self.config.workers,
            self.config.watch_interval,
            self.config.resync_interval,
        )

        try:
            self._config_fingerprint = self._backend_config_fingerprint()
        except RegistryError as exc:
            logger.warning("Backend config unreadable at startup: %s", exc)

        loops = [(f"worker-{i}", self._worker_loop) for i in range(self.config.workers)]
        loops += [("watch", self._watch_loop), ("resync", self._resync_loop)]
        for name, target in loops:
            t = threading.Thread(target=target, name=f"daemon-{name}", daemon=True)
            t.start()
            self._threads.append(t)

        if serve_api:
            self._start_api_server()

        logger.info("Daemon started: PID %d", os.getpid())

    def stop(self) -> None:
        """Gracefully stop the daemon and all workers."""
        logger.info("Daemon stopping...")
        self._stop_event.set()
        self.queue.shutdown()
        self.state.running = False

        if self._server:
            self._server.shutdown()

        for t in self._threads:
            t.join(timeout=5)

        self.cache.close()
        self._remove_pid()
        logger.info("Daemon stopped.")

    def run_forever(self) -> None:
        """Block until stop is signaled."""
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    # -- workers -----------------------------------------------------------------

    def _worker_loop(self) -> None:
        """Pull credential names off the queue and reconcile them."""
        while not self._stop_event.is_set():
            key = self.queue.get(timeout=1)
            if key is None:
                continue
            self.process(key)

    def process(self, key: str) -> None:
        """Reconcile one key and schedule its follow-up."""
        requeue_after: Optional[float] = None
        try:
            ctx = OperationContext(timeout=self.config.operation_timeout)
            result = self.reconciler.reconcile(key, ctx)
            requeue_after = result.requeue_after
            self.state.record_pass(result.ok)
            if not result.ok:
                self.state.record_error(f"{key}: {result.error}")
        except Exception as exc:
            logger.exception("Reconcile of %s crashed", key)
            self.state.record_pass(False)
            self.state.record_error(f"{key}: {exc}")
            requeue_after = REQUEUE_ERROR
        finally:
            self.queue.done(key)
        if requeue_after:
            self.queue.add_after(key, requeue_after)

    def _watch_loop(self) -> None:
        """Enqueue credentials whose records changed since the last scan."""
        while not self._stop_event.is_set():
            try:
                self.check_config()
                for key in self.scan_changes():
                    self.queue.add(key)
                self.state.record_watch()
            except RegistryError as exc:
                logger.error("Watch error: %s", exc)
                self.state.record_error(f"Watch: {exc}")
            self._stop_event.wait(timeout=self.config.watch_interval)

    def _resync_loop(self) -> None:
        """Periodically enqueue every credential."""
        while not self._stop_event.is_set():
            self._stop_event.wait(timeout=self.config.resync_interval)
            if self._stop_event.is_set():
                break
            try:
                self.enqueue_all()
                self.state.record_resync()
            except RegistryError as exc:
                logger.error("Resync error: %s", exc)
                self.state.record_error(f"Resync: {exc}")

    def enqueue_all(self) -> int:
        """Enqueue every credential in the registry.

        Returns:
            Number of keys enqueued.
        """
        names = [c.name for c in self.registry.list_credentials()]
        for name in names:
            self.queue.add(name)
        logger.debug("Enqueued %d credentials for resync", len(names))
        return len(names)

    def scan_changes(self) -> list[str]:
        """Return credentials whose record or referencing devices changed.

        A device change marks the credential it references, and the one it
        referenced previously when the reference moved.
        """
        current: dict[str, str] = {}
        for cred in self.registry.list_credentials():
            current[f"credential/{cred.name}"] = cred.model_dump_json()
        for device in self.registry.list_devices():
            current[f"device/{device.name}"] = device.model_dump_json()

        changed: set[str] = set()
        for key in set(current) | set(self._fingerprints):
            before, after = self._fingerprints.get(key), current.get(key)
            if before == after:
                continue
            kind, name = key.split("/", 1)
            if kind == "credential":
                changed.add(name)
                continue
            for snapshot in (before, after):
                if snapshot is not None:
                    changed.add(json.loads(snapshot)["credential_ref"])

        self._fingerprints = current
        return sorted(changed)

    def _backend_config_fingerprint(self) -> Optional[str]:
        config = self.registry.get_backend_config(DEFAULT_BACKEND_CONFIG_NAME)
        return config.model_dump_json() if config is not None else None

    def check_config(self) -> bool:
        """Invalidate the cache and resync everything if the config changed.

        Returns:
            True if a change was detected.
        """
        fingerprint = self._backend_config_fingerprint()
        if fingerprint == self._config_fingerprint:
            return False
        self._config_fingerprint = fingerprint
        self.config_reconciler.reconcile(DEFAULT_BACKEND_CONFIG_NAME)
        self.state.record_config_reload()
        self.enqueue_all()
        return True

    # -- status ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Daemon state plus queue depth and backend status."""
        snap = self.state.snapshot()
        snap["queue"] = {
            "ready": len(self.queue),
            "delayed": self.queue.pending_delayed(),
            "in_flight": self.queue.in_flight(),
        }
        snap["backend_initialized"] = self.cache.is_initialized
        snap["metrics"] = self.metrics.report().summary()
        return snap

    def _start_api_server(self) -> None:
        """Start the local HTTP API server in a background thread."""
        service = self

        class DaemonHandler(BaseHTTPRequestHandler):
            """HTTP handler for daemon status API."""

            def do_GET(self):
                """Handle GET requests to the daemon API."""
                if self.path == "/status":
                    self._json_response(service.status())
                elif self.path == "/metrics":
                    self._json_response(service.metrics.report().model_dump(mode="json"))
                elif self.path == "/events":
                    self._json_response(
                        [e.model_dump() for e in service.events.recent(limit=100)]
                    )
                elif self.path == "/healthz":
                    healthy = service.state.running
                    self._json_response({"ok": healthy}, status=200 if healthy else 503)
                elif self.path == "/ping":
                    self._json_response({"pong": True, "pid": os.getpid()})
                else:
                    self._json_response(
                        {"endpoints": ["/status", "/metrics", "/events", "/healthz", "/ping"]},
                        status=200,
                    )

            def _json_response(self, data: Any, status: int = 200):
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.end_headers()
                self.wfile.write(json.dumps(data, indent=2, default=str).encode())

            def log_message(self, format, *args):
                logger.debug("API: %s", format % args)

        try:
            self._server = HTTPServer(("127.0.0.1", self.config.port), DaemonHandler)
            t = threading.Thread(
                target=self._server.serve_forever,
                name="daemon-api",
                daemon=True,
            )
            t.start()
            self._threads.append(t)
            logger.info("API server listening on http://127.0.0.1:%d", self.config.port)
        except OSError as exc:
            logger.error("Failed to start API server: %s", exc)
            self.state.record_error(f"API server: {exc}")

    # -- process plumbing --------------------------------------------------------

    def _setup_logging(self) -> None:
        """Attach the daemon log file to the root logger."""
        handler = logging.FileHandler(self.config.log_file)
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")
        )
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(logging.INFO)

    def _setup_signals(self) -> None:
        """Register signal handlers for graceful shutdown."""
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %s, stopping", signal.Signals(signum).name)
        self._stop_event.set()

    def _write_pid(self) -> None:
        pid_path = self.config.home / PID_FILE
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        pid_path.write_text(str(os.getpid()), encoding="utf-8")

    def _remove_pid(self) -> None:
        pid_path = self.config.home / PID_FILE
        if pid_path.exists():
            pid_path.unlink()


def read_pid(home: Optional[Path] = None) -> Optional[int]:
    """Read the daemon PID from the PID file.

    Args:
        home: State directory.

    Returns:
        PID as int, or None if not running.
    """
    home = Path(home or SYNC_HOME).expanduser()
    pid_path = home / PID_FILE
    if not pid_path.exists():
        return None
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        pid_path.unlink(missing_ok=True)
        return None


def is_running(home: Optional[Path] = None) -> bool:
    """Check if the daemon is currently running."""
    return read_pid(home) is not None


def get_daemon_status(port: int = DEFAULT_PORT) -> Optional[dict]:
    """Query the running daemon's status via HTTP API.

    Args:
        port: API port to query.

    Returns:
        Status dict from the daemon, or None if unreachable.
    """
    import urllib.error
    import urllib.request

    try:
        url = f"http://127.0.0.1:{port}/status"
        with urllib.request.urlopen(url, timeout=3) as resp:
            return json.loads(resp.read())
    except (urllib.error.URLError, OSError, json.JSONDecodeError):
        return None
