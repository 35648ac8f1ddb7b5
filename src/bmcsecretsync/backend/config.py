"""
Backend configuration loading and store construction.

Configuration comes from the registry record named
``default-backend-config`` when it exists, otherwise from environment
variables:

    SECRET_BACKEND_TYPE     vault (default) | openbao
    VAULT_ADDR              required
    VAULT_AUTH_METHOD       kubernetes (default) | token
    VAULT_ROLE              kubernetes auth role
    VAULT_KUBERNETES_PATH   kubernetes auth mount (default: kubernetes)
    VAULT_TOKEN             static token for token auth
    VAULT_MOUNT_PATH        KV mount (default: secret)
    VAULT_SKIP_VERIFY       "true" disables TLS verification
    VAULT_CACERT            path to a PEM CA bundle
    PATH_TEMPLATE           default path template
    REGION_LABEL_KEY        device label holding the region (default: region)
    SYNC_LABEL              global sync label, ``key`` or ``key=value``
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from ..errors import ConfigurationError, RegistryError, UnsupportedBackendError
from ..models import (
    DEFAULT_KUBERNETES_AUTH_PATH,
    DEFAULT_MOUNT_PATH,
    DEFAULT_PATH_TEMPLATE,
    DEFAULT_REGION_LABEL_KEY,
    BackendConfig,
    BackendType,
    VaultSettings,
)
from .base import SecretStore
from .vault import VaultSecretStore

logger = logging.getLogger("bmcsecretsync.backend.config")

DEFAULT_BACKEND_CONFIG_NAME = "default-backend-config"


def _env(environ: Mapping[str, str], key: str, default: str = "") -> str:
    return environ.get(key) or default


def ensure_supported_backend(backend: str) -> None:
    """Raise UnsupportedBackendError unless the backend kind is implemented."""
    if backend == BackendType.OPENBAO.value:
        raise UnsupportedBackendError("OpenBao backend not yet implemented")
    if backend != BackendType.VAULT.value:
        raise UnsupportedBackendError(f"unsupported backend type: {backend}")


def load_config_from_env(environ: Optional[Mapping[str, str]] = None) -> BackendConfig:
    """Build a BackendConfig from environment variables.

    Args:
        environ: Variable mapping (defaults to ``os.environ``).

    Returns:
        BackendConfig: Validated configuration.

    Raises:
        ConfigurationError: If VAULT_ADDR is missing or a value is invalid.
        UnsupportedBackendError: For openbao or unknown backend kinds.
    """
    environ = os.environ if environ is None else environ
    backend = _env(environ, "SECRET_BACKEND_TYPE", BackendType.VAULT.value)
    ensure_supported_backend(backend)

    address = _env(environ, "VAULT_ADDR")
    if not address:
        raise ConfigurationError("VAULT_ADDR environment variable is required")

    ca_cert = ""
    ca_path = _env(environ, "VAULT_CACERT")
    if ca_path:
        try:
            ca_cert = Path(ca_path).expanduser().read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"failed to read VAULT_CACERT {ca_path}: {exc}") from exc

    try:
        return BackendConfig(
            backend=backend,
            vault=VaultSettings(
                address=address,
                auth_method=_env(environ, "VAULT_AUTH_METHOD", "kubernetes"),
                kubernetes_role=_env(environ, "VAULT_ROLE"),
                kubernetes_path=_env(
                    environ, "VAULT_KUBERNETES_PATH", DEFAULT_KUBERNETES_AUTH_PATH
                ),
                token=_env(environ, "VAULT_TOKEN"),
                mount_path=_env(environ, "VAULT_MOUNT_PATH", DEFAULT_MOUNT_PATH),
                skip_verify=environ.get("VAULT_SKIP_VERIFY") == "true",
                ca_cert=ca_cert,
            ),
            path_template=_env(environ, "PATH_TEMPLATE", DEFAULT_PATH_TEMPLATE),
            region_label_key=_env(environ, "REGION_LABEL_KEY", DEFAULT_REGION_LABEL_KEY),
            sync_label=_env(environ, "SYNC_LABEL"),
        )
    except ValidationError as exc:
        raise ConfigurationError(f"invalid environment configuration: {exc}") from exc


def load_backend_config(
    registry: Any, environ: Optional[Mapping[str, str]] = None
) -> tuple[BackendConfig, str]:
    """Load configuration from the registry, falling back to the environment.

    Args:
        registry: Registry exposing ``get_backend_config(name)``.
        environ: Variable mapping for the fallback.

    Returns:
        tuple: (config, source) where source is "registry" or "environment".

    Raises:
        ConfigurationError: If neither source yields a usable configuration.
    """
    try:
        config = registry.get_backend_config(DEFAULT_BACKEND_CONFIG_NAME)
    except RegistryError as exc:
        raise ConfigurationError(f"failed to load backend configuration: {exc}") from exc

    if config is not None:
        logger.debug("Loaded backend configuration %s from registry", DEFAULT_BACKEND_CONFIG_NAME)
        return config, "registry"

    logger.debug("No %s record, using environment", DEFAULT_BACKEND_CONFIG_NAME)
    return load_config_from_env(environ), "environment"


def create_store(
    config: BackendConfig, settings: VaultSettings, metrics: Optional[Any] = None
) -> SecretStore:
    """Construct the concrete store for a backend kind.

    Args:
        config: The loaded configuration (selects the backend kind).
        settings: Vault settings for this particular mount.
        metrics: Optional recorder for authentication attempts.

    Raises:
        UnsupportedBackendError: For openbao or unknown backend kinds.
    """
    ensure_supported_backend(config.backend)
    return VaultSecretStore(settings, metrics=metrics)
