"""
Secret store contract -- what every KV backend must provide.

Stores take a logical path (relative to their mount) and an optional
OperationContext that lets the caller cancel or bound the operation.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

from ..errors import OperationCancelledError, SecretNotFoundError


class OperationContext:
    """Cancellation token with an optional deadline.

    Args:
        timeout: Seconds from now after which the context expires.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._cancelled = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> None:
        """Raise if the operation should not proceed.

        Raises:
            OperationCancelledError: If cancelled or past the deadline.
        """
        if self.cancelled:
            raise OperationCancelledError("context canceled")
        if self.expired:
            raise OperationCancelledError("context deadline exceeded")


def check_context(ctx: Optional[OperationContext]) -> None:
    if ctx is not None:
        ctx.check()


class SecretStore(ABC):
    """Abstract CRUD contract for a remote credential store.

    ``exists`` must be False exactly when ``read`` would raise
    SecretNotFoundError. Implementations never mutate the caller's
    dict and always return copies from ``read``.
    """

    @abstractmethod
    def write(
        self, path: str, data: dict[str, Any], ctx: Optional[OperationContext] = None
    ) -> None:
        """Write a secret at the logical path.

        Args:
            path: Path relative to the store's mount.
            data: Key/value pairs to store.
            ctx: Optional cancellation context.

        Raises:
            WriteError: If the remote write fails.
        """

    @abstractmethod
    def read(
        self, path: str, ctx: Optional[OperationContext] = None
    ) -> dict[str, Any]:
        """Read the secret at the logical path.

        Returns:
            A copy of the stored key/value pairs.

        Raises:
            SecretNotFoundError: If nothing is stored at the path.
            ReadError: If the remote read fails.
        """

    @abstractmethod
    def delete(self, path: str, ctx: Optional[OperationContext] = None) -> None:
        """Delete the secret at the logical path, including history."""

    def exists(self, path: str, ctx: Optional[OperationContext] = None) -> bool:
        """Check whether a secret is stored at the logical path."""
        try:
            self.read(path, ctx)
        except SecretNotFoundError:
            return False
        return True

    @abstractmethod
    def close(self) -> None:
        """Release client resources."""
