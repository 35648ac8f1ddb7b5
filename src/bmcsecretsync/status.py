"""
Sync status tracking -- one status record per credential.

The record lists every (destination, device) path attempted in the last
pass, aggregate counts, and a single ``Synced`` condition:

    failed == 0              True   AllPathsSynced
    successful > 0, failed   False  PartialSync
    successful == 0, failed  False  SyncFailed

The condition is replaced only when its status or reason changes, so its
transition time records when the state actually flipped.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from .errors import RegistryError, StatusPersistenceError
from .models import BackendPath, Condition, SyncStatusRecord

logger = logging.getLogger("bmcsecretsync.status")

STATUS_SUFFIX = "-sync-status"
CONDITION_SYNCED = "Synced"

REASON_ALL_SYNCED = "AllPathsSynced"
REASON_PARTIAL = "PartialSync"
REASON_FAILED = "SyncFailed"


def status_name(credential_name: str) -> str:
    return f"{credential_name}{STATUS_SUFFIX}"


def sync_condition(total: int, successful: int, failed: int) -> Condition:
    """Derive the Synced condition from aggregate counts."""
    if failed == 0:
        return Condition(
            type=CONDITION_SYNCED,
            status="True",
            reason=REASON_ALL_SYNCED,
            message=f"Successfully synced to {successful} backend paths",
        )
    if successful > 0:
        return Condition(
            type=CONDITION_SYNCED,
            status="False",
            reason=REASON_PARTIAL,
            message=f"Synced {successful}/{total} paths, {failed} failed",
        )
    return Condition(
        type=CONDITION_SYNCED,
        status="False",
        reason=REASON_FAILED,
        message=f"Failed to sync to {failed} paths",
    )


def set_condition(conditions: list[Condition], new: Condition) -> None:
    """Insert or replace a condition of the same type, in place.

    An existing condition with the same status and reason is left
    untouched, transition time and message included.
    """
    for i, existing in enumerate(conditions):
        if existing.type != new.type:
            continue
        if existing.status != new.status or existing.reason != new.reason:
            conditions[i] = new
        return
    conditions.append(new)


class SyncStatusTracker:
    """Persists SyncStatusRecords through the registry.

    Args:
        registry: Registry holding the status records.
    """

    def __init__(self, registry) -> None:
        self._registry = registry

    def get(self, credential_name: str) -> Optional[SyncStatusRecord]:
        try:
            return self._registry.get_sync_status(status_name(credential_name))
        except RegistryError as exc:
            raise StatusPersistenceError(
                f"failed to get sync status for {credential_name}: {exc}"
            ) from exc

    def upsert(
        self,
        credential_name: str,
        backend_paths: list[BackendPath],
        total: int,
        successful: int,
        failed: int,
    ) -> SyncStatusRecord:
        """Create or update the status record for a credential.

        Args:
            credential_name: The credential the status belongs to.
            backend_paths: Per-path outcomes of the latest pass.
            total: Number of paths attempted.
            successful: Paths synced or already up to date.
            failed: Paths that failed.

        Returns:
            SyncStatusRecord: The stored record.

        Raises:
            StatusPersistenceError: If the registry rejects the read or write.
        """
        name = status_name(credential_name)
        record = self.get(credential_name)
        if record is None:
            record = SyncStatusRecord(name=name, credential_ref=credential_name)
            logger.debug("Creating sync status %s", name)

        record.backend_paths = list(backend_paths)
        record.last_sync_attempt = datetime.now(timezone.utc)
        record.total_paths = total
        record.successful_paths = successful
        record.failed_paths = failed
        set_condition(record.conditions, sync_condition(total, successful, failed))

        try:
            self._registry.save_sync_status(record)
        except RegistryError as exc:
            raise StatusPersistenceError(f"failed to save sync status {name}: {exc}") from exc
        return record

    def delete(self, credential_name: str) -> None:
        """Remove the status record. A missing record is not an error."""
        name = status_name(credential_name)
        try:
            self._registry.delete_sync_status(name)
        except RegistryError as exc:
            raise StatusPersistenceError(f"failed to delete sync status {name}: {exc}") from exc
