"""Tests for the bmcsecretsync daemon."""

from __future__ import annotations

import json
import os
import threading
import time
import urllib.request
from unittest.mock import MagicMock, patch

import pytest

from bmcsecretsync.backend.cache import BackendCache
from bmcsecretsync.daemon import (
    DaemonConfig,
    DaemonService,
    DaemonState,
    get_daemon_status,
    is_running,
    read_pid,
)
from bmcsecretsync.reconciler import REQUEUE_ERROR, REQUEUE_NORMAL

from conftest import FakeStoreFactory, make_credential, make_device, vault_config

CONFIG_NAME = "default-backend-config"


@pytest.fixture
def daemon_home(tmp_path):
    """Create a minimal state home for daemon tests."""
    home = tmp_path / ".bmcsecretsync"
    home.mkdir()
    (home / "logs").mkdir()
    return home


@pytest.fixture
def daemon_config(daemon_home):
    return DaemonConfig(home=daemon_home, port=0, watch_interval=60, resync_interval=600)


@pytest.fixture
def factory():
    return FakeStoreFactory()


@pytest.fixture
def svc(daemon_config, registry, factory):
    """DaemonService over the in-memory registry and fake stores."""
    service = DaemonService(
        daemon_config,
        registry=registry,
        cache=BackendCache(registry, store_factory=factory),
    )
    yield service
    if not service.cache.closed:
        service.cache.close()


class TestDaemonState:
    """Tests for thread-safe DaemonState."""

    def test_initial_state(self):
        state = DaemonState()
        assert state.running is False
        assert state.passes_completed == 0
        assert state.passes_failed == 0

    def test_snapshot(self):
        state = DaemonState()
        snap = state.snapshot()
        assert snap["running"] is False
        assert snap["passes_completed"] == 0
        assert snap["last_watch"] is None
        assert snap["pid"] == os.getpid()

    def test_record_pass(self):
        state = DaemonState()
        state.record_pass(True)
        state.record_pass(False)
        assert state.passes_completed == 2
        assert state.passes_failed == 1

    def test_record_watch_and_resync(self):
        state = DaemonState()
        state.record_watch()
        state.record_resync()
        snap = state.snapshot()
        assert snap["last_watch"] is not None
        assert snap["last_resync"] is not None

    def test_error_limit(self):
        state = DaemonState()
        for i in range(60):
            state.record_error(f"error-{i}")
        assert len(state.errors) == 50
        assert len(state.snapshot()["recent_errors"]) == 10

    def test_thread_safety(self):
        state = DaemonState()
        errors = []

        def worker(n):
            try:
                for _ in range(100):
                    state.record_pass(n % 2 == 0)
                    state.record_error(f"from-{n}")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert state.passes_completed == 400
        assert state.passes_failed == 200


class TestDaemonConfig:
    """Tests for DaemonConfig."""

    def test_defaults(self, daemon_home):
        config = DaemonConfig(home=daemon_home)
        assert config.workers == 2
        assert config.watch_interval == 5
        assert config.resync_interval == 600
        assert config.port == 7878
        assert config.operation_timeout is None

    def test_workers_at_least_one(self, daemon_home):
        assert DaemonConfig(home=daemon_home, workers=0).workers == 1

    def test_creates_log_dir(self, tmp_path):
        config = DaemonConfig(home=tmp_path / "fresh")
        assert config.log_file.parent.exists()


class TestPidManagement:
    """Tests for PID file read/write."""

    def test_no_pid_file(self, daemon_home):
        assert read_pid(daemon_home) is None
        assert is_running(daemon_home) is False

    def test_own_pid(self, daemon_home):
        (daemon_home / "daemon.pid").write_text(str(os.getpid()))
        assert read_pid(daemon_home) == os.getpid()

    def test_garbage_pid_cleaned(self, daemon_home):
        pid_path = daemon_home / "daemon.pid"
        pid_path.write_text("not-a-pid")
        assert read_pid(daemon_home) is None
        assert not pid_path.exists()

    def test_unreachable_daemon(self):
        assert get_daemon_status(_find_free_port()) is None


class TestProcess:
    """Tests for processing a single queue key."""

    def test_success_requeues_normal(self, svc, registry, factory):
        registry.put_credential(make_credential())
        registry.put_device(make_device("bmc-1", hostname="host1"))

        with patch.object(svc.queue, "add_after") as add_after:
            svc.process("bmc-creds")

        add_after.assert_called_once_with("bmc-creds", REQUEUE_NORMAL)
        assert svc.state.passes_completed == 1
        assert svc.state.passes_failed == 0
        assert list(factory.store().secrets) == ["bmc/us-east-1/host1/admin"]

    def test_failure_recorded(self, svc, registry):
        registry.put_credential(make_credential(password=None))
        registry.put_device(make_device("bmc-1"))

        with patch.object(svc.queue, "add_after") as add_after:
            svc.process("bmc-creds")

        add_after.assert_called_once_with("bmc-creds", REQUEUE_ERROR)
        assert svc.state.passes_failed == 1
        assert "password not found" in svc.state.errors[0]

    def test_missing_credential_not_requeued(self, svc):
        svc.process("ghost")
        assert svc.queue.pending_delayed() == 0
        assert svc.state.passes_completed == 1

    def test_crash_requeues_error(self, svc):
        svc.reconciler = MagicMock()
        svc.reconciler.reconcile.side_effect = RuntimeError("bug")

        with patch.object(svc.queue, "add_after") as add_after:
            svc.process("bmc-creds")

        add_after.assert_called_once_with("bmc-creds", REQUEUE_ERROR)
        assert svc.state.passes_failed == 1

    def test_operation_timeout_forwarded(self, daemon_home, registry, factory):
        config = DaemonConfig(home=daemon_home, port=0, operation_timeout=12.5)
        service = DaemonService(config, registry=registry,
                                cache=BackendCache(registry, store_factory=factory))
        service.reconciler = MagicMock()
        service.reconciler.reconcile.return_value = MagicMock(requeue_after=None, ok=True)

        service.process("bmc-creds")

        ctx = service.reconciler.reconcile.call_args.args[1]
        assert 0 < ctx.remaining() <= 12.5
        service.cache.close()


class TestChangeDetection:
    """Tests for the watch loop's change scanning."""

    def test_first_scan_reports_everything(self, svc, registry):
        registry.put_credential(make_credential("a"))
        registry.put_credential(make_credential("b"))
        registry.put_device(make_device("bmc-1", credential="c"))
        assert svc.scan_changes() == ["a", "b", "c"]

    def test_unchanged_scan_is_empty(self, svc, registry):
        registry.put_credential(make_credential("a"))
        svc.scan_changes()
        assert svc.scan_changes() == []

    def test_credential_change(self, svc, registry):
        registry.put_credential(make_credential("a"))
        svc.scan_changes()
        registry.put_credential(make_credential("a", password="rotated"))
        assert svc.scan_changes() == ["a"]

    def test_device_moved_marks_both_credentials(self, svc, registry):
        registry.put_credential(make_credential("a"))
        registry.put_credential(make_credential("b"))
        registry.put_device(make_device("bmc-1", credential="a"))
        svc.scan_changes()

        registry.put_device(make_device("bmc-1", credential="b"))
        assert svc.scan_changes() == ["a", "b"]

    def test_device_removed(self, svc, registry):
        registry.put_device(make_device("bmc-1", credential="a"))
        svc.scan_changes()
        registry.delete_device("bmc-1")
        assert svc.scan_changes() == ["a"]

    def test_enqueue_all(self, svc, registry):
        registry.put_credential(make_credential("a"))
        registry.put_credential(make_credential("b"))
        assert svc.enqueue_all() == 2
        assert len(svc.queue) == 2


class TestConfigWatch:
    """Tests for backend config change handling."""

    def test_first_check_detects_config(self, svc, registry):
        registry.put_credential(make_credential("a"))
        assert svc.check_config() is True
        assert svc.state.config_reloads == 1
        assert len(svc.queue) == 1

    def test_no_change(self, svc):
        svc.check_config()
        assert svc.check_config() is False
        assert svc.state.config_reloads == 1

    def test_change_invalidates_cache(self, svc, registry):
        svc.check_config()
        svc.cache.snapshot()
        registry.put_backend_config(CONFIG_NAME, vault_config(sync_label="managed"))

        assert svc.check_config() is True
        assert svc.cache.is_initialized is False
        assert svc.cache.get_global_sync_label() == "managed"
        assert "ConfigReloaded" in svc.events.reasons(CONFIG_NAME)

    def test_deletion_detected(self, svc, registry):
        svc.check_config()
        registry.delete_backend_config(CONFIG_NAME)
        assert svc.check_config() is True


class TestDaemonStatus:
    """Tests for the status snapshot."""

    def test_status_fields(self, svc):
        svc.queue.add("a")
        svc.queue.add_after("b", 60)
        status = svc.status()
        assert status["queue"] == {"ready": 1, "delayed": 1, "in_flight": 0}
        assert status["backend_initialized"] is False
        assert "reconcile=" in status["metrics"]


class TestDaemonService:
    """Tests for DaemonService lifecycle."""

    def test_starts_and_stops(self, svc, daemon_home):
        with patch.object(svc, "_start_api_server"):
            svc.start(install_signals=False)
            assert svc.state.running is True
            assert (daemon_home / "daemon.pid").exists()

            svc.stop()
            assert svc.state.running is False
            assert svc.cache.closed is True
            assert not (daemon_home / "daemon.pid").exists()

    def test_end_to_end_sync(self, daemon_home, registry, factory):
        registry.put_credential(make_credential())
        registry.put_device(make_device("bmc-1", hostname="host1"))
        config = DaemonConfig(home=daemon_home, port=0, watch_interval=1, workers=2)
        service = DaemonService(
            config, registry=registry, cache=BackendCache(registry, store_factory=factory)
        )

        service.start(install_signals=False, serve_api=False)
        try:
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                if "bmc/us-east-1/host1/admin" in factory.remote.get("secret", {}):
                    break
                time.sleep(0.05)
        finally:
            service.stop()

        assert factory.remote["secret"]["bmc/us-east-1/host1/admin"]["password"] == "s3cret"
        assert registry.get_sync_status("bmc-creds-sync-status") is not None


class TestDaemonAPI:
    """Tests for the HTTP API server."""

    def _get(self, port: int, path: str):
        url = f"http://127.0.0.1:{port}{path}"
        with urllib.request.urlopen(url, timeout=2) as resp:
            return json.loads(resp.read())

    def test_api_endpoints(self, svc):
        svc.state.running = True
        svc.config.port = _find_free_port()
        svc._write_pid()
        svc._start_api_server()
        svc.events.event("bmc-creds", "Normal", "Synced", "ok")

        time.sleep(0.2)

        try:
            port = svc.config.port
            assert self._get(port, "/ping")["pong"] is True
            assert self._get(port, "/healthz") == {"ok": True}
            status = self._get(port, "/status")
            assert status["running"] is True
            assert "queue" in status
            assert "reconcile_results" in self._get(port, "/metrics")
            assert self._get(port, "/events")[0]["reason"] == "Synced"
            assert "/status" in self._get(port, "/")["endpoints"]
            assert get_daemon_status(port)["pid"] == os.getpid()
        finally:
            svc.stop()


def _find_free_port() -> int:
    """Find an available port for testing."""
    import socket
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
