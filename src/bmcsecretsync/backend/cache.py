"""
BackendCache -- one lazily built, atomically replaced backend snapshot.

The snapshot (CachedState) bundles the default store and template, the
engine router and the configuration it was built from. Readers share it
under a read lock; the first reader to find it missing takes the write
lock, re-checks, and builds it. ``invalidate()`` closes the outgoing
stores and drops the snapshot so the next access rebuilds from scratch.

The loaded configuration is cached on its own as well, so ``config()``
and the global sync-label accessors work without constructing stores.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping, Optional

from ..errors import CacheClosedError, ConfigurationError
from ..models import BackendConfig, EngineBinding, VaultSettings
from .base import SecretStore
from .config import create_store, ensure_supported_backend, load_backend_config
from .instrumented import InstrumentedStore
from .pathbuilder import PathTemplateBuilder
from .routing import EngineRoute, EngineRouter, LabelSelector

logger = logging.getLogger("bmcsecretsync.backend.cache")

StoreFactory = Callable[[BackendConfig, VaultSettings, Optional[Any]], SecretStore]


class ReadWriteLock:
    """Many readers or one writer. Writers waiting block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class CachedState:
    """Immutable backend snapshot. Replaced wholesale, never mutated."""

    store: SecretStore
    template: PathTemplateBuilder
    router: EngineRouter
    config: BackendConfig
    source: str = "environment"

    def stores(self) -> list[SecretStore]:
        return [self.store, *self.router.stores()]


class BackendCache:
    """Thread-safe factory and cache for the backend snapshot.

    Args:
        registry: Registry used to look up the configuration record.
        metrics: Optional recorder; stores are instrumented when present.
        store_factory: Builds one store per (config, settings). Defaults
            to ``create_store``.
        environ: Environment mapping for the configuration fallback.
    """

    def __init__(
        self,
        registry: Any,
        metrics: Optional[Any] = None,
        store_factory: Optional[StoreFactory] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._registry = registry
        self._metrics = metrics
        self._store_factory = store_factory or create_store
        self._environ = environ
        self._lock = ReadWriteLock()
        self._state: Optional[CachedState] = None
        self._loaded: Optional[tuple[BackendConfig, str]] = None
        self._closed = False
        self.builds = 0

    # -- snapshot ----------------------------------------------------------------

    def snapshot(self) -> CachedState:
        """Return the current snapshot, building it on first use.

        Raises:
            CacheClosedError: After ``close()``.
            ConfigurationError: If no usable configuration is found.
            AuthError: If a store cannot authenticate.
        """
        with self._lock.read():
            if self._closed:
                raise CacheClosedError("backend cache is closed")
            if self._state is not None:
                return self._state

        with self._lock.write():
            if self._closed:
                raise CacheClosedError("backend cache is closed")
            if self._state is None:
                self._state = self._build()
                self.builds += 1
            return self._state

    def config(self) -> BackendConfig:
        """Return the active configuration without building any store.

        The loaded configuration is kept until ``invalidate()`` and is the
        one the next snapshot is built from.

        Raises:
            CacheClosedError: After ``close()``.
            ConfigurationError: If no usable configuration is found.
        """
        with self._lock.read():
            if self._closed:
                raise CacheClosedError("backend cache is closed")
            if self._state is not None:
                return self._state.config
            if self._loaded is not None:
                return self._loaded[0]

        with self._lock.write():
            if self._closed:
                raise CacheClosedError("backend cache is closed")
            if self._state is not None:
                return self._state.config
            return self._load()[0]

    def _load(self) -> tuple[BackendConfig, str]:
        if self._loaded is None:
            self._loaded = load_backend_config(self._registry, self._environ)
        return self._loaded

    def _build(self) -> CachedState:
        config, source = self._load()
        ensure_supported_backend(config.backend)
        if config.vault is None:
            raise ConfigurationError(
                f"{config.backend} configuration is required when backend is {config.backend}"
            )

        template = PathTemplateBuilder(config.path_template)
        engine_templates = [
            (binding, PathTemplateBuilder(binding.path_template)) for binding in config.engines
        ]

        created: list[SecretStore] = []
        routes: list[EngineRoute] = []
        try:
            store = self._make_store(config, config.vault, None)
            created.append(store)
            for binding, engine_template in engine_templates:
                engine_store = self._make_store(
                    config, config.vault.for_mount(binding.mount_path), binding.name
                )
                created.append(engine_store)
                routes.append(
                    EngineRoute(
                        name=binding.name,
                        store=engine_store,
                        template=engine_template,
                        selector=LabelSelector.parse(binding.sync_label),
                        binding=binding,
                    )
                )
        except Exception:
            _close_all(created)
            raise

        global_selector = LabelSelector.parse(config.sync_label) if config.sync_label else None
        logger.info(
            "Backend initialized from %s: backend=%s engines=%d template=%s",
            source,
            config.backend,
            len(routes),
            config.path_template,
        )
        return CachedState(
            store=store,
            template=template,
            router=EngineRouter(routes, global_selector=global_selector),
            config=config,
            source=source,
        )

    def _make_store(
        self, config: BackendConfig, settings: VaultSettings, engine: Optional[str]
    ) -> SecretStore:
        try:
            store = self._store_factory(config, settings, self._metrics)
        except Exception as exc:
            if engine is not None:
                logger.error("Failed to create backend for engine %s: %s", engine, exc)
            raise
        if self._metrics is not None:
            store = InstrumentedStore(store, config.backend, self._metrics, engine=engine)
        return store

    # -- accessors ---------------------------------------------------------------

    def get_store(self) -> SecretStore:
        return self.snapshot().store

    def get_default_template(self) -> PathTemplateBuilder:
        return self.snapshot().template

    def get_region_label_key(self) -> str:
        return self.snapshot().config.region_label_key

    def get_global_sync_label(self) -> str:
        return self.config().sync_label

    def get_global_selector(self) -> Optional[LabelSelector]:
        """Selector for the global sync label, or None when unset.

        Needs only the configuration, so it answers while the backend
        itself is unreachable.
        """
        label = self.get_global_sync_label()
        return LabelSelector.parse(label) if label else None

    def get_engine_bindings(self, labels: Optional[dict[str, str]]) -> list[EngineRoute]:
        return self.snapshot().router.resolve(labels)

    def has_engines(self) -> bool:
        return self.snapshot().router.has_engines

    def engine_bindings(self) -> list[EngineBinding]:
        """All configured bindings, matched or not."""
        return [route.binding for route in self.snapshot().router.routes]

    # -- lifecycle ---------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_initialized(self) -> bool:
        with self._lock.read():
            return self._state is not None

    def invalidate(self) -> None:
        """Close the outgoing stores and drop the snapshot. Never raises."""
        with self._lock.write():
            self._drop_state()

    def close(self) -> None:
        """Invalidate and refuse all further access."""
        with self._lock.write():
            self._drop_state()
            self._closed = True
        logger.info("Backend cache closed")

    def _drop_state(self) -> None:
        state, self._state = self._state, None
        self._loaded = None
        if state is not None:
            _close_all(state.stores())
            logger.info("Backend cache invalidated")


def _close_all(stores: list[SecretStore]) -> None:
    for store in stores:
        try:
            store.close()
        except Exception as exc:
            logger.warning("Failed to close backend %r: %s", store, exc)
