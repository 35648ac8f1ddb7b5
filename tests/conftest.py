"""Shared test fixtures for bmcsecretsync."""

from __future__ import annotations

import copy
import threading
from pathlib import Path
from typing import Any, Optional

import pytest

from bmcsecretsync.backend.base import OperationContext, SecretStore, check_context
from bmcsecretsync.backend.cache import BackendCache
from bmcsecretsync.errors import SecretNotFoundError
from bmcsecretsync.events import EventRecorder
from bmcsecretsync.metrics import MetricsCollector
from bmcsecretsync.models import (
    BackendConfig,
    CredentialRecord,
    DeviceRecord,
    EngineBinding,
    VaultSettings,
)
from bmcsecretsync.reconciler import SyncReconciler
from bmcsecretsync.registry import MemoryRegistry
from bmcsecretsync.status import SyncStatusTracker


class FakeSecretStore(SecretStore):
    """In-memory SecretStore with call tracking and error injection."""

    def __init__(
        self, mount_path: str = "secret", secrets: Optional[dict[str, dict[str, Any]]] = None
    ) -> None:
        self.mount_path = mount_path
        self.secrets: dict[str, dict[str, Any]] = {} if secrets is None else secrets
        self.write_calls: list[str] = []
        self.read_calls: list[str] = []
        self.delete_calls: list[str] = []
        self.write_error: Optional[Exception] = None
        self.read_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self.exists_error: Optional[Exception] = None
        self.fail_writes: dict[str, Exception] = {}
        self.close_error: Optional[Exception] = None
        self.closed = False
        self._lock = threading.Lock()

    def write(
        self, path: str, data: dict[str, Any], ctx: Optional[OperationContext] = None
    ) -> None:
        check_context(ctx)
        with self._lock:
            self.write_calls.append(path)
            if self.write_error is not None:
                raise self.write_error
            if path in self.fail_writes:
                raise self.fail_writes[path]
            self.secrets[path] = copy.deepcopy(data)

    def read(self, path: str, ctx: Optional[OperationContext] = None) -> dict[str, Any]:
        check_context(ctx)
        with self._lock:
            self.read_calls.append(path)
            if self.read_error is not None:
                raise self.read_error
            if path not in self.secrets:
                raise SecretNotFoundError(path)
            return copy.deepcopy(self.secrets[path])

    def delete(self, path: str, ctx: Optional[OperationContext] = None) -> None:
        check_context(ctx)
        with self._lock:
            self.delete_calls.append(path)
            if self.delete_error is not None:
                raise self.delete_error
            self.secrets.pop(path, None)

    def exists(self, path: str, ctx: Optional[OperationContext] = None) -> bool:
        check_context(ctx)
        with self._lock:
            if self.exists_error is not None:
                raise self.exists_error
            return path in self.secrets

    def close(self) -> None:
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


class FakeStoreFactory:
    """Store factory for BackendCache that hands out FakeSecretStores.

    Every call builds a new store, but stores for the same mount share
    one secrets dict, so remote state survives a cache rebuild.
    """

    def __init__(self) -> None:
        self.remote: dict[str, dict[str, dict[str, Any]]] = {}
        self.by_mount: dict[str, FakeSecretStore] = {}
        self.created: list[FakeSecretStore] = []
        self.settings: list[VaultSettings] = []
        self.error: Optional[Exception] = None
        self.calls = 0

    def __call__(
        self, config: BackendConfig, settings: VaultSettings, metrics: Any = None
    ) -> FakeSecretStore:
        self.calls += 1
        if self.error is not None:
            raise self.error
        self.settings.append(settings)
        secrets = self.remote.setdefault(settings.mount_path, {})
        store = FakeSecretStore(settings.mount_path, secrets)
        self.by_mount[settings.mount_path] = store
        self.created.append(store)
        return store

    def store(self, mount_path: str = "secret") -> FakeSecretStore:
        return self.by_mount[mount_path]


def make_credential(
    name: str = "bmc-creds",
    username: Optional[str] = "admin",
    password: Optional[str] = "s3cret",
    labels: Optional[dict[str, str]] = None,
    finalizers: Optional[list[str]] = None,
) -> CredentialRecord:
    data: dict[str, str] = {}
    if username is not None:
        data["username"] = username
    if password is not None:
        data["password"] = password
    return CredentialRecord(
        name=name,
        labels=labels or {},
        data=data,
        finalizers=list(finalizers or []),
    )


def make_device(
    name: str,
    credential: str = "bmc-creds",
    region: Optional[str] = "us-east-1",
    hostname: Optional[str] = None,
    endpoint_ref: Optional[str] = None,
) -> DeviceRecord:
    labels = {"region": region} if region is not None else {}
    return DeviceRecord(
        name=name,
        labels=labels,
        hostname=hostname,
        endpoint_ref=endpoint_ref,
        credential_ref=credential,
    )


def vault_config(**overrides: Any) -> BackendConfig:
    data: dict[str, Any] = {
        "backend": "vault",
        "vault": VaultSettings(address="https://vault.example.com:8200", auth_method="token",
                               token="s.test"),
    }
    data.update(overrides)
    return BackendConfig(**data)


def engine(name: str, mount: str, label: str, template: str = "") -> EngineBinding:
    return EngineBinding(name=name, mount_path=mount, sync_label=label, path_template=template)


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """Provide a temporary state directory for testing."""
    home = tmp_path / ".bmcsecretsync"
    home.mkdir()
    return home


@pytest.fixture
def registry() -> MemoryRegistry:
    reg = MemoryRegistry()
    reg.put_backend_config("default-backend-config", vault_config())
    return reg


@pytest.fixture
def store_factory() -> FakeStoreFactory:
    return FakeStoreFactory()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def cache(registry: MemoryRegistry, store_factory: FakeStoreFactory) -> BackendCache:
    c = BackendCache(registry, store_factory=store_factory, environ={})
    yield c
    if not c.closed:
        c.close()


@pytest.fixture
def events() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def reconciler(
    registry: MemoryRegistry,
    cache: BackendCache,
    events: EventRecorder,
    metrics: MetricsCollector,
) -> SyncReconciler:
    return SyncReconciler(
        registry,
        cache,
        tracker=SyncStatusTracker(registry),
        events=events,
        metrics=metrics,
    )
