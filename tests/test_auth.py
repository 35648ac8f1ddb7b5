"""Tests for Vault authentication methods."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests
from hvac.exceptions import Forbidden

from bmcsecretsync.backend.auth import authenticate
from bmcsecretsync.errors import AuthError, UnsupportedAuthMethodError
from bmcsecretsync.metrics import MetricsCollector
from bmcsecretsync.models import VaultSettings


def _settings(**overrides) -> VaultSettings:
    data = {"address": "https://vault:8200"}
    data.update(overrides)
    return VaultSettings(**data)


@pytest.fixture
def sa_token(tmp_path):
    path = tmp_path / "token"
    path.write_text("eyJhbGciOi.jwt.payload\n")
    return path


class TestKubernetesAuth:
    """Tests for service-account login."""

    def test_login_sets_token(self, sa_token):
        client = MagicMock()
        client.auth.kubernetes.login.return_value = {"auth": {"client_token": "s.k8s"}}
        settings = _settings(kubernetes_role="bmc-sync", kubernetes_path="k8s-east")

        authenticate(client, settings, token_path=sa_token)

        client.auth.kubernetes.login.assert_called_once_with(
            role="bmc-sync",
            jwt="eyJhbGciOi.jwt.payload",
            use_token=False,
            mount_point="k8s-east",
        )
        assert client.token == "s.k8s"

    def test_missing_token_file(self, tmp_path):
        with pytest.raises(AuthError, match="failed to read service account token"):
            authenticate(MagicMock(), _settings(), token_path=tmp_path / "absent")

    def test_login_rejected(self, sa_token):
        client = MagicMock()
        client.auth.kubernetes.login.side_effect = Forbidden("permission denied")
        with pytest.raises(AuthError, match="kubernetes auth login failed"):
            authenticate(client, _settings(), token_path=sa_token)

    def test_login_unreachable(self, sa_token):
        client = MagicMock()
        client.auth.kubernetes.login.side_effect = requests.exceptions.ConnectionError("down")
        with pytest.raises(AuthError, match="login failed"):
            authenticate(client, _settings(), token_path=sa_token)

    def test_no_client_token(self, sa_token):
        client = MagicMock()
        client.auth.kubernetes.login.return_value = {"auth": None}
        with pytest.raises(AuthError, match="returned no token"):
            authenticate(client, _settings(), token_path=sa_token)


class TestTokenAuth:
    """Tests for static token authentication."""

    def test_valid_token(self):
        client = MagicMock()
        authenticate(client, _settings(auth_method="token", token="s.abc"))
        assert client.token == "s.abc"
        client.auth.token.lookup_self.assert_called_once()

    def test_empty_token(self):
        client = MagicMock()
        with pytest.raises(AuthError, match="token is required"):
            authenticate(client, _settings(auth_method="token"))
        client.auth.token.lookup_self.assert_not_called()

    def test_lookup_fails(self):
        client = MagicMock()
        client.auth.token.lookup_self.side_effect = Forbidden("permission denied")
        with pytest.raises(AuthError, match="token validation failed"):
            authenticate(client, _settings(auth_method="token", token="s.bad"))


class TestUnsupportedMethods:
    """Tests for methods that are not implemented."""

    def test_approle(self):
        with pytest.raises(UnsupportedAuthMethodError, match="approle"):
            authenticate(MagicMock(), _settings(auth_method="approle"))

    def test_unknown(self):
        with pytest.raises(UnsupportedAuthMethodError, match="unsupported auth method: ldap"):
            authenticate(MagicMock(), _settings(auth_method="ldap"))

    def test_unsupported_is_auth_error(self):
        with pytest.raises(AuthError):
            authenticate(MagicMock(), _settings(auth_method="ldap"))


class TestAuthMetrics:
    """Tests for recording authentication attempts."""

    def test_success_recorded(self):
        metrics = MetricsCollector()
        authenticate(MagicMock(), _settings(auth_method="token", token="t"), metrics=metrics)
        stats = metrics.report().auth["token/vault"]
        assert stats.count == 1
        assert stats.errors == 0

    def test_failure_recorded(self, tmp_path):
        metrics = MetricsCollector()
        with pytest.raises(AuthError):
            authenticate(MagicMock(), _settings(), metrics=metrics, token_path=tmp_path / "x")
        stats = metrics.report().auth["kubernetes/vault"]
        assert stats.count == 1
        assert stats.errors == 1

    def test_recorder_called_with_error(self):
        metrics = MagicMock()
        client = MagicMock()
        client.auth.token.lookup_self.side_effect = Forbidden("denied")
        with pytest.raises(AuthError):
            authenticate(client, _settings(auth_method="token", token="t"), metrics=metrics)
        method, backend, duration, error = metrics.record_auth.call_args.args
        assert (method, backend) == ("token", "vault")
        assert duration >= 0
        assert isinstance(error, AuthError)

    @pytest.mark.parametrize("method", ["approle", "ldap"])
    def test_unsupported_recorded(self, method):
        metrics = MetricsCollector()
        with pytest.raises(UnsupportedAuthMethodError):
            authenticate(MagicMock(), _settings(auth_method=method), metrics=metrics)
        stats = metrics.report().auth[f"{method}/vault"]
        assert stats.count == 1
        assert stats.errors == 1
