"""
Vault KV secret store.

Connects with hvac, authenticates (see ``auth``), then reads the mount
table once to learn whether the target mount is KV v1 or v2. Every
later operation dispatches on that answer:

    v2: <mount>/data/<path>   (delete removes metadata and all versions)
    v1: <mount>/<path>
"""

from __future__ import annotations

import copy
import logging
import os
import ssl
import tempfile
from pathlib import Path
from typing import Any, Optional

import hvac
import requests
from hvac.exceptions import InvalidPath, VaultError

from ..errors import (
    ConfigurationError,
    DeleteError,
    ReadError,
    SecretNotFoundError,
    WriteError,
)
from ..models import VaultSettings
from .auth import SERVICE_ACCOUNT_TOKEN_PATH, authenticate
from .base import OperationContext, SecretStore, check_context

logger = logging.getLogger("bmcsecretsync.backend.vault")

_CLIENT_ERRORS = (VaultError, requests.exceptions.RequestException)


class VaultSecretStore(SecretStore):
    """SecretStore backed by a Vault KV mount.

    Args:
        settings: Address, auth, TLS and mount settings.
        metrics: Optional recorder for authentication attempts.
        client: Pre-built hvac client (a fresh one is created when None).
        token_path: Service-account token file for kubernetes auth.

    Raises:
        ConfigurationError: Bad CA bundle, or the mount does not exist.
        AuthError: Authentication failed.
        UnsupportedAuthMethodError: The auth method is not supported.
    """

    def __init__(
        self,
        settings: VaultSettings,
        metrics: Optional[Any] = None,
        client: Optional[hvac.Client] = None,
        token_path: Path = SERVICE_ACCOUNT_TOKEN_PATH,
    ) -> None:
        self.settings = settings
        self.mount_path = settings.mount_path.strip("/")
        self._ca_file: Optional[str] = None

        if client is None:
            client = hvac.Client(url=settings.address, verify=self._tls_verify())
        self._client = client

        try:
            authenticate(client, settings, metrics, token_path=token_path)
            self.is_kv_v2 = self._detect_kv_version()
        except Exception:
            self._remove_ca_file()
            raise

        logger.info(
            "Vault store ready: %s mount=%s kv=%s",
            settings.address,
            self.mount_path,
            "v2" if self.is_kv_v2 else "v1",
        )

    # -- construction helpers ------------------------------------------------

    def _tls_verify(self) -> Any:
        """Value for hvac's ``verify``: False, a CA bundle path, or True."""
        if self.settings.skip_verify:
            logger.warning("TLS verification disabled for %s", self.settings.address)
            return False
        if not self.settings.ca_cert:
            return True

        try:
            ssl.create_default_context(cadata=self.settings.ca_cert)
        except (ssl.SSLError, ValueError) as exc:
            raise ConfigurationError(f"failed to parse CA certificate: {exc}") from exc

        fd, name = tempfile.mkstemp(prefix="bmcsecretsync-ca-", suffix=".pem")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(self.settings.ca_cert)
        self._ca_file = name
        return name

    def _detect_kv_version(self) -> bool:
        """Return True when the target mount is KV v2.

        Raises:
            ConfigurationError: If the mount list cannot be read or the
                mount is not present.
        """
        try:
            response = self._client.sys.list_mounted_secrets_engines()
        except _CLIENT_ERRORS as exc:
            raise ConfigurationError(f"failed to list mounts: {exc}") from exc

        mounts = (response or {}).get("data") or response or {}
        mount = mounts.get(f"{self.mount_path}/")
        if not isinstance(mount, dict):
            raise ConfigurationError(f"mount path {self.mount_path} not found")

        version = (mount.get("options") or {}).get("version")
        if version == "2":
            return True
        if version == "1":
            return False
        return mount.get("type") in ("kv", "generic")

    # -- paths -----------------------------------------------------------------

    def build_path(self, path: str) -> str:
        """Full API path for a logical path under this mount."""
        path = path.lstrip("/")
        if self.is_kv_v2:
            return f"{self.mount_path}/data/{path}"
        return f"{self.mount_path}/{path}"

    # -- SecretStore -------------------------------------------------------------

    def write(
        self, path: str, data: dict[str, Any], ctx: Optional[OperationContext] = None
    ) -> None:
        full_path = self.build_path(path)
        check_context(ctx)
        secret = dict(data)
        try:
            if self.is_kv_v2:
                self._client.secrets.kv.v2.create_or_update_secret(
                    path=path, secret=secret, mount_point=self.mount_path
                )
            else:
                self._client.secrets.kv.v1.create_or_update_secret(
                    path=path, secret=secret, mount_point=self.mount_path
                )
        except _CLIENT_ERRORS as exc:
            raise WriteError(
                f"failed to write secret to vault at {full_path}: {exc}",
                path=full_path,
                orig_exc=exc,
            ) from exc
        logger.debug("Wrote secret to %s", full_path)

    def read(self, path: str, ctx: Optional[OperationContext] = None) -> dict[str, Any]:
        full_path = self.build_path(path)
        check_context(ctx)
        try:
            if self.is_kv_v2:
                response = self._client.secrets.kv.v2.read_secret_version(
                    path=path, mount_point=self.mount_path, raise_on_deleted_version=True
                )
                data = ((response or {}).get("data") or {}).get("data")
            else:
                response = self._client.secrets.kv.v1.read_secret(
                    path=path, mount_point=self.mount_path
                )
                data = (response or {}).get("data")
        except InvalidPath as exc:
            raise SecretNotFoundError(full_path) from exc
        except _CLIENT_ERRORS as exc:
            raise ReadError(
                f"failed to read secret from vault at {full_path}: {exc}",
                path=full_path,
                orig_exc=exc,
            ) from exc

        if data is None:
            raise SecretNotFoundError(full_path)
        return copy.deepcopy(dict(data))

    def delete(self, path: str, ctx: Optional[OperationContext] = None) -> None:
        full_path = self.build_path(path)
        check_context(ctx)
        try:
            if self.is_kv_v2:
                self._client.secrets.kv.v2.delete_metadata_and_all_versions(
                    path=path, mount_point=self.mount_path
                )
            else:
                self._client.secrets.kv.v1.delete_secret(
                    path=path, mount_point=self.mount_path
                )
        except _CLIENT_ERRORS as exc:
            raise DeleteError(
                f"failed to delete secret from vault at {full_path}: {exc}",
                path=full_path,
                orig_exc=exc,
            ) from exc
        logger.debug("Deleted secret at %s", full_path)

    def close(self) -> None:
        adapter = getattr(self._client, "adapter", None)
        try:
            if adapter is not None and hasattr(adapter, "close"):
                adapter.close()
        finally:
            self._remove_ca_file()

    def _remove_ca_file(self) -> None:
        if self._ca_file is None:
            return
        try:
            os.unlink(self._ca_file)
        except FileNotFoundError:
            pass
        self._ca_file = None

    def __repr__(self) -> str:
        return f"VaultSecretStore({self.settings.address!r}, mount={self.mount_path!r})"
