"""Value types for the tiered backup policy model.

Everything here is a frozen dataclass. Collections are stored as tuples so a
compiled Policy can be shared freely (across threads, regions, backends)
without copying.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


# Capabilities the execution role must hold, no more and no fewer.
CAP_ASSUME_BY_BACKEND = "assume-by-backend-service"
CAP_PASS_ROLE = "pass-role"
CAP_PERFORM_BACKUP = "perform-backup"
CAP_PERFORM_RESTORE = "perform-restore"

REQUIRED_CAPABILITIES = (
    CAP_ASSUME_BY_BACKEND,
    CAP_PASS_ROLE,
    CAP_PERFORM_BACKUP,
    CAP_PERFORM_RESTORE,
)

ACCOUNT_ROOT_PRINCIPAL = "account-root"


class StorageState(str, Enum):
    """Lifecycle state of a single recovery point."""
    ACTIVE = "ACTIVE"
    COLD_STORAGE = "COLD_STORAGE"
    EXPIRED = "EXPIRED"


class Operator(str, Enum):
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    LIKE = "LIKE"
    NOT_LIKE = "NOT_LIKE"


# Backend spellings accepted on input.
OPERATOR_ALIASES = {
    "STRINGEQUALS": Operator.EQUALS,
    "STRINGNOTEQUALS": Operator.NOT_EQUALS,
    "STRINGLIKE": Operator.LIKE,
    "STRINGNOTLIKE": Operator.NOT_LIKE,
}


@dataclass(frozen=True)
class RetentionPolicy:
    delete_after_days: int
    move_to_cold_storage_after_days: Optional[int] = None
    archive_eligible: bool = False


@dataclass(frozen=True)
class SelectionRule:
    tag_key: str
    tag_value: str
    operator: Operator = Operator.EQUALS


@dataclass(frozen=True)
class Tier:
    """A named recurring backup rule.

    `target_vault_id` references the policy's vault by identifier; an empty
    value means "the policy vault" and is filled in by the compiler.
    """
    name: str
    schedule: str
    start_window_minutes: int
    completion_window_minutes: int
    retention: RetentionPolicy
    selection: tuple = ()  # of SelectionRule
    target_vault_id: str = ""


@dataclass(frozen=True)
class KeyGrant:
    principal: str
    actions: tuple


@dataclass(frozen=True)
class EncryptionKey:
    id: str
    alias: str = ""
    rotation_enabled: bool = True
    retain_on_delete: bool = True
    grants: tuple = (KeyGrant(ACCOUNT_ROOT_PRINCIPAL, ("kms:*",)),)
    description: str = ""


@dataclass(frozen=True)
class Vault:
    id: str
    encryption_key: EncryptionKey
    retain_on_delete: bool = True


@dataclass(frozen=True)
class ExecutionRole:
    id: str
    capabilities: tuple = REQUIRED_CAPABILITIES


@dataclass(frozen=True)
class Policy:
    """Compiled, immutable backup policy.

    Built only by the compiler; any change means compiling and deploying a
    new Policy.
    """
    vault: Vault
    role: ExecutionRole
    tiers: tuple  # of Tier, registration order
    timezone: str = "UTC"

    def tier(self, name: str) -> Optional[Tier]:
        for t in self.tiers:
            if t.name == name:
                return t
        return None

    def tier_names(self) -> list:
        return [t.name for t in self.tiers]

    def tiers_for(self, resource_tags: dict) -> list:
        """Return every tier whose selection matches the given tags."""
        from internal.policy.selection import matching_tiers
        return matching_tiers(resource_tags, self.tiers)


@dataclass(frozen=True)
class RunWindow:
    """One scheduled run of a tier and the instant it must be done by."""
    tier: str
    run_at: datetime
    deadline: datetime


@dataclass(frozen=True)
class MissedWindow:
    """Report for a run that did not complete before its deadline."""
    run_at: datetime
    deadline: datetime
    completed_at: Optional[datetime] = None
    tier: str = ""
    details: dict = field(default_factory=dict, compare=False)
