"""Recovery point lifecycle: ACTIVE -> (COLD_STORAGE) -> EXPIRED.

The state is a pure function of the recovery point's age, so it only ever
moves forward as `now` increases. `archive_eligible` is advisory metadata
for the provisioning backend and plays no part here.
"""

from datetime import datetime, timedelta
from typing import Optional

from internal.models.types import RetentionPolicy, StorageState
from internal.policy.errors import (
    ColdStorageDwellTooShort,
    InvalidRetentionOrdering,
)


def _is_whole_number(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_retention(
    retention: RetentionPolicy,
    tier: Optional[str] = None,
    min_cold_storage_days: int = 0,
) -> None:
    """Static checks run at compile time.

    Raises:
        InvalidRetentionOrdering: day counts are negative/non-integer, or the
            cold transition is not strictly before deletion.
        ColdStorageDwellTooShort: the recovery point would sit in cold
            storage for fewer than `min_cold_storage_days` days.
    """
    delete_after = retention.delete_after_days
    cold_after = retention.move_to_cold_storage_after_days

    if not _is_whole_number(delete_after) or delete_after < 0:
        raise InvalidRetentionOrdering(
            f"deleteAfterDays must be a non-negative integer, got {delete_after!r}",
            tier=tier, field="deleteAfterDays",
        )
    if cold_after is None:
        return
    if not _is_whole_number(cold_after) or cold_after < 0:
        raise InvalidRetentionOrdering(
            f"moveToColdStorageAfterDays must be a non-negative integer, got {cold_after!r}",
            tier=tier, field="moveToColdStorageAfterDays",
        )
    if cold_after >= delete_after:
        raise InvalidRetentionOrdering(
            f"moveToColdStorageAfterDays ({cold_after}) must be less than "
            f"deleteAfterDays ({delete_after})",
            tier=tier, field="moveToColdStorageAfterDays",
        )
    dwell = delete_after - cold_after
    if dwell < min_cold_storage_days:
        raise ColdStorageDwellTooShort(
            f"recovery points spend {dwell} days in cold storage; "
            f"at least {min_cold_storage_days} are required",
            tier=tier, field="deleteAfterDays",
        )


def evaluate(created_at: datetime, retention: RetentionPolicy, now: datetime) -> StorageState:
    """Return the storage state of a recovery point at `now`."""
    age = now - created_at
    if age >= timedelta(days=retention.delete_after_days):
        return StorageState.EXPIRED
    cold_after = retention.move_to_cold_storage_after_days
    if cold_after is not None and age >= timedelta(days=cold_after):
        return StorageState.COLD_STORAGE
    return StorageState.ACTIVE


def transition_schedule(created_at: datetime, retention: RetentionPolicy) -> dict:
    """Instants at which a recovery point enters each non-initial state."""
    schedule = {StorageState.ACTIVE: created_at}
    if retention.move_to_cold_storage_after_days is not None:
        schedule[StorageState.COLD_STORAGE] = created_at + timedelta(
            days=retention.move_to_cold_storage_after_days
        )
    schedule[StorageState.EXPIRED] = created_at + timedelta(days=retention.delete_after_days)
    return schedule
