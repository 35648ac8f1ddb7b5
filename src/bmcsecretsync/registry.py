"""
Registry -- the source of truth the engine reconciles against.

Credentials and devices are owned by operators; the engine only adds and
removes its finalizer on credentials and owns the sync status records.

Deleting a credential that still carries finalizers only stamps its
deletion marker. The record disappears once the last finalizer is
removed through ``remove_finalizer``.

FileRegistry directory layout:
    ~/.bmcsecretsync/registry/
    ├── credentials/     # One YAML file per CredentialRecord
    ├── devices/         # One YAML file per DeviceRecord
    ├── config/          # BackendConfig records (default-backend-config.yaml)
    └── status/          # One JSON file per SyncStatusRecord (engine owned)
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ValidationError

from .errors import RegistryError
from .models import BackendConfig, CredentialRecord, DeviceRecord, SyncStatusRecord

logger = logging.getLogger("bmcsecretsync.registry")


class Registry(ABC):
    """Read/write access to credentials, devices, configuration and status.

    Subclasses provide a reentrant ``_lock`` that serializes every
    read-modify-write of a credential against plain writes.
    """

    @abstractmethod
    def get_credential(self, name: str) -> Optional[CredentialRecord]:
        """Return the credential, or None if it does not exist."""

    @abstractmethod
    def list_credentials(self) -> list[CredentialRecord]:
        """Return every credential record."""

    @abstractmethod
    def put_credential(self, record: CredentialRecord) -> CredentialRecord:
        """Create or replace a credential record."""

    @abstractmethod
    def _remove_credential(self, name: str) -> None:
        """Drop a credential record unconditionally."""

    def add_finalizer(self, name: str, finalizer: str) -> CredentialRecord:
        """Add a finalizer to the stored credential.

        Only the finalizer list of the currently stored record changes;
        labels, data and other finalizers keep whatever value they have
        at the time of the call.

        Raises:
            RegistryError: If the credential no longer exists.
        """
        with self._lock:
            record = self._require_credential(name)
            if record.add_finalizer(finalizer):
                self.put_credential(record)
            return record

    def remove_finalizer(self, name: str, finalizer: str) -> Optional[CredentialRecord]:
        """Remove a finalizer from the stored credential.

        A record marked for deletion whose last finalizer is gone is
        removed instead of stored, and None is returned.

        Raises:
            RegistryError: If the credential no longer exists.
        """
        with self._lock:
            record = self._require_credential(name)
            if not record.remove_finalizer(finalizer):
                return record
            if record.is_deleting and not record.finalizers:
                self._remove_credential(name)
                logger.info("Credential %s removed", name)
                return None
            return self.put_credential(record)

    def _require_credential(self, name: str) -> CredentialRecord:
        record = self.get_credential(name)
        if record is None:
            raise RegistryError(f"credential {name} not found")
        return record

    def delete_credential(self, name: str) -> bool:
        """Request deletion of a credential.

        Returns:
            bool: True if the record was removed immediately, False if it
            was only marked for deletion (finalizers pending).

        Raises:
            RegistryError: If the credential does not exist.
        """
        with self._lock:
            record = self._require_credential(name)
            if not record.finalizers:
                self._remove_credential(name)
                return True
            if not record.is_deleting:
                record.deletion_timestamp = datetime.now(timezone.utc)
                self.put_credential(record)
            return False

    @abstractmethod
    def list_devices(self) -> list[DeviceRecord]:
        """Return every device record."""

    @abstractmethod
    def put_device(self, record: DeviceRecord) -> DeviceRecord:
        """Create or replace a device record."""

    @abstractmethod
    def get_backend_config(self, name: str) -> Optional[BackendConfig]:
        """Return the named backend configuration, or None if absent.

        Raises:
            RegistryError: If the record exists but cannot be read.
        """

    @abstractmethod
    def put_backend_config(self, name: str, config: BackendConfig) -> None:
        """Create or replace a backend configuration record."""

    @abstractmethod
    def delete_backend_config(self, name: str) -> None:
        """Remove a backend configuration record (missing is fine)."""

    @abstractmethod
    def get_sync_status(self, name: str) -> Optional[SyncStatusRecord]:
        """Return the status record, or None if absent."""

    @abstractmethod
    def list_sync_statuses(self) -> list[SyncStatusRecord]:
        """Return every status record."""

    @abstractmethod
    def save_sync_status(self, record: SyncStatusRecord) -> None:
        """Create or replace a status record."""

    @abstractmethod
    def delete_sync_status(self, name: str) -> None:
        """Remove a status record (missing is fine)."""


class MemoryRegistry(Registry):
    """Thread-safe in-process registry. Returns copies, never live records."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._credentials: dict[str, CredentialRecord] = {}
        self._devices: dict[str, DeviceRecord] = {}
        self._configs: dict[str, BackendConfig] = {}
        self._statuses: dict[str, SyncStatusRecord] = {}

    def get_credential(self, name: str) -> Optional[CredentialRecord]:
        with self._lock:
            record = self._credentials.get(name)
            return record.model_copy(deep=True) if record else None

    def list_credentials(self) -> list[CredentialRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._credentials.values()]

    def put_credential(self, record: CredentialRecord) -> CredentialRecord:
        with self._lock:
            self._credentials[record.name] = record.model_copy(deep=True)
        return record

    def _remove_credential(self, name: str) -> None:
        with self._lock:
            self._credentials.pop(name, None)

    def list_devices(self) -> list[DeviceRecord]:
        with self._lock:
            return [d.model_copy(deep=True) for d in self._devices.values()]

    def put_device(self, record: DeviceRecord) -> DeviceRecord:
        with self._lock:
            self._devices[record.name] = record.model_copy(deep=True)
        return record

    def delete_device(self, name: str) -> None:
        with self._lock:
            self._devices.pop(name, None)

    def get_backend_config(self, name: str) -> Optional[BackendConfig]:
        with self._lock:
            config = self._configs.get(name)
            return config.model_copy(deep=True) if config else None

    def put_backend_config(self, name: str, config: BackendConfig) -> None:
        with self._lock:
            self._configs[name] = config.model_copy(deep=True)

    def delete_backend_config(self, name: str) -> None:
        with self._lock:
            self._configs.pop(name, None)

    def get_sync_status(self, name: str) -> Optional[SyncStatusRecord]:
        with self._lock:
            record = self._statuses.get(name)
            return record.model_copy(deep=True) if record else None

    def list_sync_statuses(self) -> list[SyncStatusRecord]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._statuses.values()]

    def save_sync_status(self, record: SyncStatusRecord) -> None:
        with self._lock:
            self._statuses[record.name] = record.model_copy(deep=True)

    def delete_sync_status(self, name: str) -> None:
        with self._lock:
            self._statuses.pop(name, None)


class FileRegistry(Registry):
    """Registry backed by a directory of YAML and JSON files.

    Args:
        home: Root directory (e.g. ~/.bmcsecretsync).
    """

    def __init__(self, home: Path) -> None:
        self.home = Path(home).expanduser()
        self.root = self.home / "registry"
        self.credentials_dir = self.root / "credentials"
        self.devices_dir = self.root / "devices"
        self.config_dir = self.root / "config"
        self.status_dir = self.root / "status"
        self._lock = threading.RLock()

    def ensure_dirs(self) -> None:
        """Create registry directories if they don't exist."""
        for directory in (
            self.credentials_dir,
            self.devices_dir,
            self.config_dir,
            self.status_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    # -- file helpers ------------------------------------------------------------

    def _load_yaml(self, path: Path, model: type[BaseModel]) -> Any:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            return model.model_validate(data)
        except (OSError, yaml.YAMLError, ValidationError) as exc:
            raise RegistryError(f"failed to load {path}: {exc}") from exc

    def _write_yaml(self, path: Path, record: BaseModel) -> None:
        self.ensure_dirs()
        data = record.model_dump(mode="json", exclude_none=True)
        try:
            path.write_text(
                yaml.safe_dump(data, default_flow_style=False, sort_keys=False),
                encoding="utf-8",
            )
        except OSError as exc:
            raise RegistryError(f"failed to write {path}: {exc}") from exc

    def _load_all(self, directory: Path, model: type[BaseModel]) -> list[Any]:
        records: list[Any] = []
        if not directory.exists():
            return records
        for f in sorted(directory.glob("*.yaml")):
            try:
                records.append(self._load_yaml(f, model))
            except RegistryError as exc:
                logger.warning("Skipping unreadable record: %s", exc)
        return records

    @staticmethod
    def _unlink(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise RegistryError(f"failed to remove {path}: {exc}") from exc

    # -- credentials -------------------------------------------------------------

    def get_credential(self, name: str) -> Optional[CredentialRecord]:
        path = self.credentials_dir / f"{name}.yaml"
        with self._lock:
            if not path.exists():
                return None
            return self._load_yaml(path, CredentialRecord)

    def list_credentials(self) -> list[CredentialRecord]:
        with self._lock:
            return self._load_all(self.credentials_dir, CredentialRecord)

    def put_credential(self, record: CredentialRecord) -> CredentialRecord:
        with self._lock:
            self._write_yaml(self.credentials_dir / f"{record.name}.yaml", record)
        return record

    def _remove_credential(self, name: str) -> None:
        with self._lock:
            self._unlink(self.credentials_dir / f"{name}.yaml")

    # -- devices -----------------------------------------------------------------

    def list_devices(self) -> list[DeviceRecord]:
        with self._lock:
            return self._load_all(self.devices_dir, DeviceRecord)

    def put_device(self, record: DeviceRecord) -> DeviceRecord:
        with self._lock:
            self._write_yaml(self.devices_dir / f"{record.name}.yaml", record)
        return record

    # -- backend config ----------------------------------------------------------

    def get_backend_config(self, name: str) -> Optional[BackendConfig]:
        path = self.config_dir / f"{name}.yaml"
        with self._lock:
            if not path.exists():
                return None
            return self._load_yaml(path, BackendConfig)

    def put_backend_config(self, name: str, config: BackendConfig) -> None:
        with self._lock:
            self._write_yaml(self.config_dir / f"{name}.yaml", config)

    def delete_backend_config(self, name: str) -> None:
        with self._lock:
            self._unlink(self.config_dir / f"{name}.yaml")

    # -- sync status -------------------------------------------------------------

    def get_sync_status(self, name: str) -> Optional[SyncStatusRecord]:
        path = self.status_dir / f"{name}.json"
        with self._lock:
            if not path.exists():
                return None
            try:
                return SyncStatusRecord.model_validate(json.loads(path.read_text()))
            except (OSError, json.JSONDecodeError, ValidationError) as exc:
                raise RegistryError(f"failed to load {path}: {exc}") from exc

    def list_sync_statuses(self) -> list[SyncStatusRecord]:
        statuses: list[SyncStatusRecord] = []
        with self._lock:
            if not self.status_dir.exists():
                return statuses
            for f in sorted(self.status_dir.glob("*.json")):
                try:
                    statuses.append(SyncStatusRecord.model_validate(json.loads(f.read_text())))
                except (OSError, json.JSONDecodeError, ValidationError) as exc:
                    logger.warning("Skipping unreadable status %s: %s", f.name, exc)
        return statuses

    def save_sync_status(self, record: SyncStatusRecord) -> None:
        path = self.status_dir / f"{record.name}.json"
        with self._lock:
            self.ensure_dirs()
            try:
                path.write_text(record.model_dump_json(indent=2) + "\n")
            except OSError as exc:
                raise RegistryError(f"failed to write {path}: {exc}") from exc

    def delete_sync_status(self, name: str) -> None:
        with self._lock:
            self._unlink(self.status_dir / f"{name}.json")
