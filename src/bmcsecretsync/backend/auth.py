"""
Vault authentication -- how the store obtains its client token.

kubernetes: log in with the pod's service-account JWT and a role.
token:      adopt a pre-issued token and verify it with lookup-self.

Every attempt, successful or not, is reported to the metrics recorder
with its method, backend kind and duration.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Optional

import hvac
import requests
from hvac.exceptions import VaultError

from ..errors import AuthError, UnsupportedAuthMethodError
from ..models import VaultSettings

logger = logging.getLogger("bmcsecretsync.backend.auth")

SERVICE_ACCOUNT_TOKEN_PATH = Path("/var/run/secrets/kubernetes.io/serviceaccount/token")
BACKEND_TYPE = "vault"


def authenticate(
    client: hvac.Client,
    settings: VaultSettings,
    metrics: Optional[Any] = None,
    token_path: Path = SERVICE_ACCOUNT_TOKEN_PATH,
) -> None:
    """Authenticate the client using the configured method.

    Args:
        client: An unauthenticated hvac client.
        settings: Vault settings naming the method and its parameters.
        metrics: Optional recorder exposing ``record_auth``.
        token_path: Service-account token file for kubernetes auth.

    Raises:
        AuthError: If the login or verification fails.
        UnsupportedAuthMethodError: For unknown or unimplemented methods.
    """
    method = settings.auth_method
    if method == "kubernetes":
        _authenticate_kubernetes(client, settings, metrics, token_path)
    elif method == "token":
        _authenticate_token(client, settings, metrics)
    else:
        start = time.monotonic()
        if method == "approle":
            err = UnsupportedAuthMethodError("approle authentication not yet implemented")
        else:
            err = UnsupportedAuthMethodError(f"unsupported auth method: {method}")
        _record(metrics, method, start, err)
        raise err


def _record(metrics: Optional[Any], method: str, start: float, error: Optional[BaseException]) -> None:
    if metrics is not None:
        metrics.record_auth(method, BACKEND_TYPE, time.monotonic() - start, error)


def _authenticate_kubernetes(
    client: hvac.Client,
    settings: VaultSettings,
    metrics: Optional[Any],
    token_path: Path,
) -> None:
    start = time.monotonic()

    try:
        jwt = token_path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        err = AuthError(f"failed to read service account token: {exc}")
        _record(metrics, "kubernetes", start, err)
        raise err from exc

    try:
        response = client.auth.kubernetes.login(
            role=settings.kubernetes_role,
            jwt=jwt,
            use_token=False,
            mount_point=settings.kubernetes_path,
        )
    except (VaultError, requests.exceptions.RequestException) as exc:
        err = AuthError(f"kubernetes auth login failed: {exc}")
        _record(metrics, "kubernetes", start, err)
        raise err from exc

    auth = (response or {}).get("auth") or {}
    client_token = auth.get("client_token")
    if not client_token:
        err = AuthError("kubernetes auth returned no token")
        _record(metrics, "kubernetes", start, err)
        raise err

    client.token = client_token
    _record(metrics, "kubernetes", start, None)
    logger.info(
        "Authenticated to Vault via kubernetes auth (role=%s, path=%s)",
        settings.kubernetes_role,
        settings.kubernetes_path,
    )


def _authenticate_token(
    client: hvac.Client, settings: VaultSettings, metrics: Optional[Any]
) -> None:
    start = time.monotonic()

    if not settings.token:
        err = AuthError("token is required for token authentication")
        _record(metrics, "token", start, err)
        raise err

    client.token = settings.token
    try:
        client.auth.token.lookup_self()
    except (VaultError, requests.exceptions.RequestException) as exc:
        err = AuthError(f"token validation failed: {exc}")
        _record(metrics, "token", start, err)
        raise err from exc

    _record(metrics, "token", start, None)
    logger.info("Authenticated to Vault with a static token")
