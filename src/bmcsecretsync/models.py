"""
Pydantic models for credentials, devices, backend configuration
and sync status.

CredentialRecord and DeviceRecord are owned by the registry. The engine
only ever touches a credential's finalizers. SyncStatusRecord is owned
exclusively by the reconciler.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_PATH_TEMPLATE = "bmc/{{.Region}}/{{.Hostname}}/{{.Username}}"
DEFAULT_REGION_LABEL_KEY = "region"
DEFAULT_MOUNT_PATH = "secret"
DEFAULT_KUBERNETES_AUTH_PATH = "kubernetes"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Registry records
# ---------------------------------------------------------------------------


class CredentialRecord(BaseModel):
    """A managed set of BMC login credentials."""

    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    data: dict[str, str] = Field(default_factory=dict)
    deletion_timestamp: Optional[datetime] = None
    finalizers: list[str] = Field(default_factory=list)

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a finalizer. Returns True if the record changed."""
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Remove a finalizer. Returns True if the record changed."""
        if finalizer not in self.finalizers:
            return False
        self.finalizers = [f for f in self.finalizers if f != finalizer]
        return True


class DeviceRecord(BaseModel):
    """A BMC that authenticates with a CredentialRecord.

    The region comes from a configurable label. The hostname falls back
    to the endpoint reference, then to the device name.
    """

    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    hostname: Optional[str] = None
    endpoint_ref: Optional[str] = None
    credential_ref: str


# ---------------------------------------------------------------------------
# Backend configuration
# ---------------------------------------------------------------------------


class BackendType(str, Enum):
    """Secret store kinds understood by the configuration loader."""

    VAULT = "vault"
    OPENBAO = "openbao"


class VaultSettings(BaseModel):
    """Connection, authentication and TLS settings for a Vault server."""

    address: str
    auth_method: str = "kubernetes"
    kubernetes_role: str = ""
    kubernetes_path: str = DEFAULT_KUBERNETES_AUTH_PATH
    token: str = ""
    mount_path: str = DEFAULT_MOUNT_PATH
    skip_verify: bool = False
    ca_cert: str = ""

    def for_mount(self, mount_path: str) -> "VaultSettings":
        """Copy of these settings pointed at another KV mount."""
        return self.model_copy(update={"mount_path": mount_path})


class EngineBinding(BaseModel):
    """A named destination: KV mount, path template and sync-label predicate."""

    name: str = Field(
        min_length=1, max_length=63, pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"
    )
    mount_path: str = Field(min_length=1)
    path_template: str = DEFAULT_PATH_TEMPLATE
    sync_label: str = Field(min_length=1)

    @field_validator("path_template")
    @classmethod
    def _default_template(cls, value: str) -> str:
        return value or DEFAULT_PATH_TEMPLATE


class BackendConfig(BaseModel):
    """Complete backend configuration, loaded all-or-nothing."""

    backend: str = BackendType.VAULT.value
    vault: Optional[VaultSettings] = None
    path_template: str = DEFAULT_PATH_TEMPLATE
    region_label_key: str = DEFAULT_REGION_LABEL_KEY
    sync_label: str = ""
    engines: list[EngineBinding] = Field(default_factory=list)

    @field_validator("path_template")
    @classmethod
    def _default_template(cls, value: str) -> str:
        return value or DEFAULT_PATH_TEMPLATE

    @field_validator("region_label_key")
    @classmethod
    def _default_region_key(cls, value: str) -> str:
        return value or DEFAULT_REGION_LABEL_KEY

    @model_validator(mode="after")
    def _unique_engine_names(self) -> "BackendConfig":
        seen: set[str] = set()
        for engine in self.engines:
            if engine.name in seen:
                raise ValueError(f"duplicate secret engine name: {engine.name}")
            seen.add(engine.name)
        return self


# ---------------------------------------------------------------------------
# Sync status
# ---------------------------------------------------------------------------


class PathSyncStatus(str, Enum):
    """Outcome of one (engine, device) sync attempt."""

    SUCCESS = "Success"
    FAILED = "Failed"


class BackendPath(BaseModel):
    """A single backend path the credential was (or failed to be) synced to."""

    path: str
    engine: Optional[str] = None
    device_name: str
    region: str
    hostname: str
    username: str
    last_sync_time: datetime = Field(default_factory=_utcnow)
    sync_status: PathSyncStatus
    error_message: str = ""


class Condition(BaseModel):
    """Coarse, typed observation about a status record."""

    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: datetime = Field(default_factory=_utcnow)


class SyncStatusRecord(BaseModel):
    """Observed sync state for one CredentialRecord."""

    name: str
    credential_ref: str
    backend_paths: list[BackendPath] = Field(default_factory=list)
    last_sync_attempt: Optional[datetime] = None
    total_paths: int = 0
    successful_paths: int = 0
    failed_paths: int = 0
    conditions: list[Condition] = Field(default_factory=list)

    def condition(self, condition_type: str) -> Optional[Condition]:
        for cond in self.conditions:
            if cond.type == condition_type:
                return cond
        return None
