"""
Metrics instrumentation for secret stores.

InstrumentedStore implements the same SecretStore contract as the store
it wraps, timing every call and forwarding the outcome to the metrics
recorder before returning or re-raising.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Optional, TypeVar

from .base import OperationContext, SecretStore

T = TypeVar("T")


class InstrumentedStore(SecretStore):
    """Times and records every operation of a wrapped store.

    Args:
        store: The concrete store.
        backend_type: Backend kind label (e.g. "vault").
        collector: Object exposing ``record_backend_operation``.
        engine: Engine name for per-engine stores.
    """

    def __init__(
        self,
        store: SecretStore,
        backend_type: str,
        collector: Any,
        engine: Optional[str] = None,
    ) -> None:
        self.store = store
        self.backend_type = backend_type
        self.engine = engine
        self._collector = collector

    def _timed(self, operation: str, call: Callable[[], T]) -> T:
        start = time.monotonic()
        try:
            result = call()
        except Exception as exc:
            self._record(operation, time.monotonic() - start, exc)
            raise
        self._record(operation, time.monotonic() - start, None)
        return result

    def _record(self, operation: str, duration: float, error: Optional[BaseException]) -> None:
        self._collector.record_backend_operation(
            operation, self.backend_type, duration, error, engine=self.engine
        )

    def write(
        self, path: str, data: dict[str, Any], ctx: Optional[OperationContext] = None
    ) -> None:
        self._timed("write", lambda: self.store.write(path, data, ctx))

    def read(self, path: str, ctx: Optional[OperationContext] = None) -> dict[str, Any]:
        return self._timed("read", lambda: self.store.read(path, ctx))

    def delete(self, path: str, ctx: Optional[OperationContext] = None) -> None:
        self._timed("delete", lambda: self.store.delete(path, ctx))

    def exists(self, path: str, ctx: Optional[OperationContext] = None) -> bool:
        return self._timed("exists", lambda: self.store.exists(path, ctx))

    def close(self) -> None:
        self.store.close()
