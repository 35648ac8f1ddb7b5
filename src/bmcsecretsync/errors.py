"""
Exception taxonomy for the synchronization engine.

Pass-fatal errors (configuration, authentication, discovery, credential
extraction) abort one reconciliation pass and are retried by requeueing.
Per-destination errors (path rendering, read, write) are isolated to a
single (engine, device) pair and only degrade the aggregate counts.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for all bmcsecretsync errors."""


class ConfigurationError(SyncError):
    """Missing or invalid backend configuration."""


class UnsupportedBackendError(ConfigurationError):
    """The configured backend kind is unknown or not implemented."""


class TemplateSyntaxError(ConfigurationError):
    """A path template could not be compiled."""


class AuthError(SyncError):
    """Authentication against the secret store failed."""


class UnsupportedAuthMethodError(AuthError):
    """The configured authentication method is unknown or not implemented."""


class CacheClosedError(SyncError):
    """The backend cache was closed and can no longer hand out stores."""


class TransportError(SyncError):
    """A remote secret-store operation failed.

    Args:
        message: Human-readable description.
        path: Full store path the operation targeted, if known.
        orig_exc: The underlying client exception, if any.
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        orig_exc: Optional[BaseException] = None,
    ) -> None:
        self.path = path
        self.orig_exc = orig_exc
        super().__init__(message)


class ReadError(TransportError):
    """Reading a secret failed for a reason other than absence."""


class WriteError(TransportError):
    """Writing a secret failed."""


class DeleteError(TransportError):
    """Deleting a secret failed."""


class OperationCancelledError(TransportError):
    """The caller's operation context was cancelled or ran out of time."""


class SecretNotFoundError(SyncError):
    """No secret exists at the requested path."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"secret not found at {path}")


class TemplateExecutionError(SyncError):
    """Rendering a compiled path template failed."""


class PathRenderError(TemplateExecutionError):
    """Rendering the path for one (engine, device) pair failed."""


class CredentialExtractionError(SyncError):
    """A credential record lacks its username or password."""


class RegistryError(SyncError):
    """The source-of-truth registry could not be read or written."""


class StatusPersistenceError(SyncError):
    """The sync status record could not be stored or removed."""
