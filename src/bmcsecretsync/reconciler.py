"""
Credential reconciliation -- converge every credential onto its backends.

A credential moves through four states:

    Unmanaged -> Active -> Deleting -> Removed

Unmanaged records gain the cleanup finalizer before anything is written,
so a crash between a write and the finalizer update can never skip
cleanup. Active records are synced to every (destination, device) pair,
skipping writes whose stored password already matches. Deleting records
have every computed path removed, their status record dropped and their
finalizer cleared.

Pass-fatal failures (discovery, credential extraction, backend
acquisition) requeue after REQUEUE_ERROR. Per-pair failures only degrade
the aggregate counts. Status persistence failures are logged and never
fail the pass.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from .backend.base import OperationContext, SecretStore
from .backend.cache import BackendCache, CachedState
from .backend.config import DEFAULT_BACKEND_CONFIG_NAME
from .backend.pathbuilder import PathTemplateBuilder, PathVariables
from .errors import (
    CredentialExtractionError,
    PathRenderError,
    RegistryError,
    StatusPersistenceError,
    SyncError,
    TemplateExecutionError,
)
from .events import (
    NORMAL,
    REASON_BACKEND_UNAVAILABLE,
    REASON_CLEANUP_FAILED,
    REASON_CONFIG_RELOADED,
    REASON_DISCOVERY_FAILED,
    REASON_MISSING_CREDENTIALS,
    REASON_NO_MATCHING_ENGINES,
    REASON_NO_REFERENCE,
    REASON_PARTIAL_SYNC,
    REASON_SYNC_FAILED,
    REASON_SYNCED,
    WARNING,
    EventRecorder,
)
from .metrics import RESULT_ERROR, RESULT_SUCCESS
from .models import BackendPath, CredentialRecord, DeviceRecord, PathSyncStatus
from .resolver import (
    PASSWORD_KEY,
    USERNAME_KEY,
    device_hostname,
    extract_credentials,
    extract_region,
    find_devices_for_credential,
)
from .status import SyncStatusTracker

logger = logging.getLogger("bmcsecretsync.reconciler")

REQUEUE_NORMAL = 300.0
REQUEUE_ERROR = 30.0

FINALIZER = "bmcsecret.metal.ironcore.dev/backend-cleanup"


@dataclass
class ReconcileResult:
    """Outcome of one pass: when to run again and what went wrong."""

    requeue_after: Optional[float] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Destination:
    """Where one credential copy goes: a store plus its path template."""

    store: SecretStore
    template: PathTemplateBuilder
    engine: Optional[str] = None

    def label(self, message: str) -> str:
        return f"[{self.engine}] {message}" if self.engine else message


@dataclass(frozen=True)
class _PathEntry:
    """Builds BackendPath entries for one (destination, device) pair."""

    dest: Destination
    device: DeviceRecord
    region: str
    hostname: str
    username: str
    sync_time: datetime

    def __call__(self, path: str, error: Optional[BaseException] = None) -> BackendPath:
        return BackendPath(
            path=path,
            engine=self.dest.engine,
            device_name=self.device.name,
            region=self.region,
            hostname=self.hostname,
            username=self.username,
            last_sync_time=self.sync_time,
            sync_status=PathSyncStatus.FAILED if error else PathSyncStatus.SUCCESS,
            error_message=self.dest.label(str(error)) if error else "",
        )


def _retry(error: BaseException) -> ReconcileResult:
    return ReconcileResult(requeue_after=REQUEUE_ERROR, error=error)


class SyncReconciler:
    """Reconciles CredentialRecords onto the configured secret stores.

    Args:
        registry: Source-of-truth registry.
        cache: BackendCache handing out the backend snapshot.
        tracker: Status tracker (defaults to one over the registry).
        events: Event recorder (defaults to an in-memory recorder).
        metrics: Optional metrics collector.
    """

    def __init__(
        self,
        registry: Any,
        cache: BackendCache,
        tracker: Optional[SyncStatusTracker] = None,
        events: Optional[EventRecorder] = None,
        metrics: Optional[Any] = None,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.tracker = tracker or SyncStatusTracker(registry)
        self.events = events or EventRecorder()
        self.metrics = metrics

    def reconcile(self, name: str, ctx: Optional[OperationContext] = None) -> ReconcileResult:
        """Run one reconciliation pass for a credential.

        Args:
            name: Credential name.
            ctx: Optional cancellation context forwarded to store calls.

        Returns:
            ReconcileResult: Requeue delay and pass-fatal error, if any.
        """
        start = time.monotonic()
        result = ReconcileResult()
        try:
            result = self._reconcile(name, ctx)
        except Exception as exc:
            result = _retry(exc)
            raise
        finally:
            if self.metrics is not None:
                self.metrics.record_reconcile_duration("reconcile", time.monotonic() - start)
                self.metrics.record_reconcile_result(
                    RESULT_SUCCESS if result.ok else RESULT_ERROR
                )
        return result

    def _reconcile(self, name: str, ctx: Optional[OperationContext]) -> ReconcileResult:
        try:
            record = self.registry.get_credential(name)
        except RegistryError as exc:
            logger.error("Failed to get credential %s: %s", name, exc)
            return _retry(exc)
        if record is None:
            return ReconcileResult()

        try:
            selector = self.cache.get_global_selector()
            if selector is not None and not selector.matches(record.labels):
                logger.debug("Credential %s lacks sync label %s, skipping", name, selector)
                return ReconcileResult()
            state: CachedState = self.cache.snapshot()
        except SyncError as exc:
            return self._backend_unavailable(record, exc, ctx)

        if record.is_deleting:
            return self._handle_deletion(record, state, ctx)

        if not record.has_finalizer(FINALIZER):
            try:
                self.registry.add_finalizer(name, FINALIZER)
            except RegistryError as exc:
                logger.error("Failed to add finalizer to %s: %s", name, exc)
                return _retry(exc)

        discovery_start = time.monotonic()
        try:
            devices = find_devices_for_credential(self.registry, name)
        except RegistryError as exc:
            logger.error("Failed to find devices for %s: %s", name, exc)
            self.events.event(name, WARNING, REASON_DISCOVERY_FAILED, str(exc))
            return _retry(exc)
        if self.metrics is not None:
            self.metrics.record_discovery(name, time.monotonic() - discovery_start)
            self.metrics.record_device_count(name, len(devices))

        if not devices:
            logger.info("No devices reference credential %s", name)
            self.events.event(name, NORMAL, REASON_NO_REFERENCE, "No BMCs reference this secret")
            return ReconcileResult(requeue_after=REQUEUE_NORMAL)

        try:
            username, password = extract_credentials(record)
        except CredentialExtractionError as exc:
            if self.metrics is not None:
                self.metrics.record_credential_extraction(name, exc)
            logger.error("Failed to extract credentials from %s: %s", name, exc)
            self.events.event(name, WARNING, REASON_MISSING_CREDENTIALS, str(exc))
            return _retry(exc)
        if self.metrics is not None:
            self.metrics.record_credential_extraction(name, None)

        if state.router.has_engines:
            routes = state.router.resolve(record.labels)
            if not routes:
                logger.info("No secret engines match labels of %s: %s", name, record.labels)
                self.events.event(
                    name,
                    NORMAL,
                    REASON_NO_MATCHING_ENGINES,
                    "No secret engines match this BMCSecret's labels",
                )
                return ReconcileResult(requeue_after=REQUEUE_NORMAL)
            destinations = [Destination(r.store, r.template, engine=r.name) for r in routes]
        else:
            destinations = [Destination(state.store, state.template)]

        return self._sync(
            record,
            devices,
            destinations,
            username,
            password,
            state.config.region_label_key,
            ctx,
        )

    # -- sync --------------------------------------------------------------------

    def _sync(
        self,
        record: CredentialRecord,
        devices: list[DeviceRecord],
        destinations: list[Destination],
        username: str,
        password: str,
        region_label_key: str,
        ctx: Optional[OperationContext],
    ) -> ReconcileResult:
        sync_time = datetime.now(timezone.utc)
        backend_paths: list[BackendPath] = []
        secret_data = {USERNAME_KEY: username, PASSWORD_KEY: password}

        for dest in destinations:
            for device in devices:
                region = extract_region(device, region_label_key)
                hostname = device_hostname(device)

                entry = _PathEntry(dest, device, region, hostname, username, sync_time)

                try:
                    path = dest.template.render(
                        PathVariables(region=region, hostname=hostname, username=username)
                    )
                except TemplateExecutionError as exc:
                    err = PathRenderError(f"failed to build path: {exc}")
                    logger.error(
                        "Failed to build path for device %s (engine=%s): %s",
                        device.name, dest.engine, exc,
                    )
                    backend_paths.append(entry("", err))
                    continue

                try:
                    needs_update = self._needs_update(dest.store, path, password, ctx)
                except SyncError as exc:
                    logger.error("Failed to check if update needed at %s: %s", path, exc)
                    backend_paths.append(entry(path, exc))
                    continue

                if not needs_update:
                    logger.debug("Secret already up to date at %s", path)
                    backend_paths.append(entry(path))
                    continue

                try:
                    dest.store.write(path, secret_data, ctx)
                except SyncError as exc:
                    logger.error("Failed to write secret to %s: %s", path, exc)
                    backend_paths.append(entry(path, exc))
                    continue

                logger.info("Synced secret %s to %s", record.name, path)
                backend_paths.append(entry(path))

        total = len(backend_paths)
        failed = sum(1 for p in backend_paths if p.sync_status == PathSyncStatus.FAILED)
        successful = total - failed

        try:
            self.tracker.upsert(record.name, backend_paths, total, successful, failed)
        except StatusPersistenceError as exc:
            logger.error("Failed to update sync status for %s: %s", record.name, exc)

        self._emit_summary(record.name, destinations, total, successful, failed)
        logger.info(
            "Reconciliation of %s complete: %d synced, %d failed, %d paths",
            record.name, successful, failed, total,
        )
        if self.metrics is not None:
            self.metrics.record_sync_status(record.name, successful, failed, sync_time)
        return ReconcileResult(requeue_after=REQUEUE_NORMAL)

    @staticmethod
    def _needs_update(
        store: SecretStore, path: str, password: str, ctx: Optional[OperationContext]
    ) -> bool:
        if not store.exists(path, ctx):
            return True
        current = store.read(path, ctx).get(PASSWORD_KEY)
        if not isinstance(current, str):
            return True
        return current != password

    def _emit_summary(
        self,
        name: str,
        destinations: list[Destination],
        total: int,
        successful: int,
        failed: int,
    ) -> None:
        engines = [d.engine for d in destinations if d.engine]
        across = f" across {len(engines)} engines" if engines else ""
        if failed == 0:
            self.events.event(
                name, NORMAL, REASON_SYNCED,
                f"Successfully synced to {successful} backend paths{across}",
            )
        elif successful > 0:
            self.events.event(
                name, WARNING, REASON_PARTIAL_SYNC,
                f"Synced {successful}/{total} secrets{across}",
            )
        else:
            self.events.event(
                name, WARNING, REASON_SYNC_FAILED,
                f"Failed to sync to {failed} backend paths{across}",
            )

    def _backend_unavailable(
        self,
        record: CredentialRecord,
        exc: SyncError,
        ctx: Optional[OperationContext],
    ) -> ReconcileResult:
        if record.is_deleting and record.has_finalizer(FINALIZER):
            logger.error(
                "Backend unavailable during cleanup of %s, allowing deletion: %s", record.name, exc
            )
            return self._handle_deletion(record, None, ctx)
        logger.error("Failed to get backend for %s: %s", record.name, exc)
        self.events.event(record.name, WARNING, REASON_BACKEND_UNAVAILABLE, str(exc))
        return _retry(exc)

    # -- deletion ----------------------------------------------------------------

    def _handle_deletion(
        self,
        record: CredentialRecord,
        state: Optional[CachedState],
        ctx: Optional[OperationContext],
    ) -> ReconcileResult:
        """Clean up remote secrets, then release the finalizer.

        When the backend, credentials or devices are unavailable the
        finalizer is released anyway and remote secrets may be orphaned.
        """
        if not record.has_finalizer(FINALIZER):
            return ReconcileResult()

        start = time.monotonic()
        try:
            if state is None:
                self.events.event(
                    record.name, WARNING, REASON_CLEANUP_FAILED,
                    "Backend unavailable during cleanup",
                )
            else:
                self._delete_remote(record, state, ctx)
            return self._finalize(record)
        finally:
            if self.metrics is not None:
                self.metrics.record_reconcile_duration("deletion", time.monotonic() - start)

    def _delete_remote(
        self,
        record: CredentialRecord,
        state: CachedState,
        ctx: Optional[OperationContext],
    ) -> None:
        name = record.name
        try:
            username, _ = extract_credentials(record)
        except CredentialExtractionError as exc:
            logger.error("Failed to extract credentials during cleanup of %s, proceeding: %s", name, exc)
            return

        try:
            devices = find_devices_for_credential(self.registry, name)
        except RegistryError as exc:
            logger.error("Failed to find devices during cleanup of %s, proceeding: %s", name, exc)
            return

        if state.router.has_engines:
            destinations = [
                Destination(r.store, r.template, engine=r.name)
                for r in state.router.resolve(record.labels)
            ]
        else:
            destinations = [Destination(state.store, state.template)]

        attempted = 0
        errors = 0
        for dest in destinations:
            for device in devices:
                variables = PathVariables(
                    region=extract_region(device, state.config.region_label_key),
                    hostname=device_hostname(device),
                    username=username,
                )
                try:
                    path = dest.template.render(variables)
                except TemplateExecutionError as exc:
                    logger.error("Failed to build path during cleanup for %s: %s", device.name, exc)
                    continue

                attempted += 1
                try:
                    dest.store.delete(path, ctx)
                except SyncError as exc:
                    errors += 1
                    logger.error("Failed to delete secret at %s: %s", path, exc)
                    continue
                logger.info("Deleted secret from backend at %s", path)

        if errors:
            self.events.event(
                name, WARNING, REASON_CLEANUP_FAILED,
                f"Failed to delete {errors}/{attempted} backend paths",
            )

    def _finalize(self, record: CredentialRecord) -> ReconcileResult:
        try:
            self.tracker.delete(record.name)
        except StatusPersistenceError as exc:
            logger.error("Failed to delete sync status for %s: %s", record.name, exc)
        if self.metrics is not None:
            self.metrics.forget_secret(record.name)

        try:
            self.registry.remove_finalizer(record.name, FINALIZER)
        except RegistryError as exc:
            logger.error("Failed to remove finalizer from %s: %s", record.name, exc)
            return _retry(exc)
        logger.info("Cleanup of %s complete, finalizer removed", record.name)
        return ReconcileResult()


class BackendConfigReconciler:
    """Invalidates the backend cache when the configuration record changes.

    Args:
        registry: Registry holding the configuration record.
        cache: The cache to invalidate.
        events: Event recorder for ConfigReloaded notifications.
    """

    def __init__(
        self,
        registry: Any,
        cache: BackendCache,
        events: Optional[EventRecorder] = None,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.events = events or EventRecorder()

    def reconcile(self, name: str = DEFAULT_BACKEND_CONFIG_NAME) -> ReconcileResult:
        if name != DEFAULT_BACKEND_CONFIG_NAME:
            logger.debug("Ignoring backend config %s", name)
            return ReconcileResult()

        try:
            config = self.registry.get_backend_config(name)
        except RegistryError as exc:
            logger.error("Failed to get backend config %s: %s", name, exc)
            return _retry(exc)

        self.cache.invalidate()
        if config is None:
            logger.info("Backend config %s deleted, cache invalidated", name)
            return ReconcileResult()

        logger.info("Backend config %s changed, cache invalidated", name)
        self.events.event(
            name,
            NORMAL,
            REASON_CONFIG_RELOADED,
            "Configuration cache invalidated, new settings will be applied on next sync",
        )
        return ReconcileResult()
