"""Policy compiler: turns a vault, an execution role and a list of tiers into
one validated, immutable Policy.

Validation pipeline (fail fast, first error wins):
  0. Vault, key and role ids are present.
  1. Tier names are unique (Tier Registry).
  2. Per tier, in registration order:
       a. retention ordering and cold-storage dwell
       b. schedule expression parses
       c. start/completion windows are within the run horizon
       d. at least one well-formed selection rule
       e. the tier targets the policy vault
  3. The execution role holds exactly the required capabilities.
  4. The vault key has rotation enabled and grants the account root
     encrypt/decrypt.

Per-tier checks are independent and may be fanned out to a thread pool;
results are joined back in registration order so the reported error is the
same either way. A failed compile leaves nothing behind.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Optional

from internal.models.types import (
    ACCOUNT_ROOT_PRINCIPAL, REQUIRED_CAPABILITIES,
    ExecutionRole, Operator, Policy, SelectionRule, Tier, Vault,
)
from internal.policy.errors import (
    ConfigError, InsufficientRolePermissions, InvalidSelection,
    KeyPolicyViolation, KeyRotationDisabled, MalformedConfig, UnknownVault,
)
from internal.policy.lifecycle import validate_retention
from internal.policy.tiers import TierRegistry
from internal.scheduler.cron import (
    DEFAULT_TIMEZONE, parse_schedule, resolve_zone, validate_windows,
)

logger = logging.getLogger(__name__)

# Minimum residency in cold storage before deletion (AWS Backup: 90 days).
DEFAULT_MIN_COLD_STORAGE_DAYS = 90
# Longest start + completion budget a run may have (100 days).
DEFAULT_MAX_RUN_HORIZON_MINUTES = 144000

_KEY_ENCRYPT_DECRYPT = {"kms:Encrypt", "kms:Decrypt"}


@dataclass(frozen=True)
class CompilerSettings:
    min_cold_storage_days: int = DEFAULT_MIN_COLD_STORAGE_DAYS
    max_run_horizon_minutes: int = DEFAULT_MAX_RUN_HORIZON_MINUTES
    timezone: str = DEFAULT_TIMEZONE
    max_workers: int = 1


def _check_selection(tier: Tier) -> None:
    if not tier.selection:
        raise InvalidSelection(
            "tier must have at least one selection rule", tier=tier.name, field="selection",
        )
    for rule in tier.selection:
        if not isinstance(rule, SelectionRule) or not isinstance(rule.operator, Operator):
            raise InvalidSelection(
                f"invalid selection rule {rule!r}", tier=tier.name, field="selection",
            )
        if not rule.tag_key:
            raise InvalidSelection(
                "selection rule has an empty tag key", tier=tier.name, field="selection",
            )


def _validate_tier(tier: Tier, vault_id: str, settings: CompilerSettings) -> Optional[ConfigError]:
    """Run every per-tier check; return the first error instead of raising."""
    try:
        validate_retention(tier.retention, tier=tier.name,
                           min_cold_storage_days=settings.min_cold_storage_days)
        parse_schedule(tier.schedule, tier=tier.name)
        validate_windows(tier.start_window_minutes, tier.completion_window_minutes,
                         settings.max_run_horizon_minutes, tier=tier.name)
        _check_selection(tier)
        if tier.target_vault_id and tier.target_vault_id != vault_id:
            raise UnknownVault(
                f"tier targets vault '{tier.target_vault_id}' but the policy vault is '{vault_id}'",
                tier=tier.name, field="targetVault",
            )
    except ConfigError as exc:
        return exc
    return None


def _require_role_id(role: ExecutionRole) -> None:
    if not role.id:
        raise MalformedConfig("execution role id is required", field="role.id")


def _require_vault_ids(vault: Vault) -> None:
    if not vault.id:
        raise MalformedConfig("vault id is required", field="vault.id")
    if not vault.encryption_key.id:
        raise MalformedConfig("vault encryption key id is required", field="vault.encryptionKey.id")


def validate_role(role: ExecutionRole) -> None:
    _require_role_id(role)
    held = set(role.capabilities)
    required = set(REQUIRED_CAPABILITIES)
    missing = sorted(required - held)
    unexpected = sorted(held - required)
    if missing or unexpected:
        parts = []
        if missing:
            parts.append(f"missing {missing}")
        if unexpected:
            parts.append(f"unexpected {unexpected}")
        raise InsufficientRolePermissions(
            f"execution role '{role.id}' must hold exactly {list(REQUIRED_CAPABILITIES)}: "
            + "; ".join(parts),
            missing=missing, unexpected=unexpected,
        )


def validate_vault(vault: Vault) -> None:
    _require_vault_ids(vault)
    key = vault.encryption_key
    if not key.rotation_enabled:
        raise KeyRotationDisabled(
            f"encryption key '{key.id}' must have rotation enabled",
            field="vault.encryptionKey.rotationEnabled",
        )
    for grant in key.grants:
        if grant.principal != ACCOUNT_ROOT_PRINCIPAL:
            continue
        actions = set(grant.actions)
        if "kms:*" in actions or _KEY_ENCRYPT_DECRYPT <= actions:
            return
    raise KeyPolicyViolation(
        f"encryption key '{key.id}' must grant {ACCOUNT_ROOT_PRINCIPAL} encrypt and decrypt",
        field="vault.encryptionKey.grants",
    )


def compile_policy(
    vault: Vault,
    role: ExecutionRole,
    tiers,
    settings: Optional[CompilerSettings] = None,
) -> Policy:
    """Validate the inputs and return an immutable Policy.

    Raises:
        ConfigError: the first problem found, in pipeline order.
    """
    settings = settings or CompilerSettings()
    tiers = list(tiers)
    resolve_zone(settings.timezone)
    # ids before any tier check
    _require_vault_ids(vault)
    _require_role_id(role)

    registry = TierRegistry()
    for tier in tiers:
        registry.register(tier)

    def check(tier):
        return _validate_tier(tier, vault.id, settings)

    if settings.max_workers > 1 and len(tiers) > 1:
        with ThreadPoolExecutor(max_workers=settings.max_workers) as pool:
            results = list(pool.map(check, tiers))
    else:
        results = [check(t) for t in tiers]
    for error in results:
        if error is not None:
            raise error

    validate_role(role)
    validate_vault(vault)

    bound = tuple(
        replace(
            t,
            schedule=f"cron({parse_schedule(t.schedule).source})",
            selection=tuple(t.selection),
            target_vault_id=vault.id,
        )
        for t in registry.all()
    )
    policy = Policy(vault=vault, role=role, tiers=bound, timezone=settings.timezone)
    logger.info("Compiled backup policy for vault %s with %d tier(s): %s",
                vault.id, len(bound), ", ".join(policy.tier_names()))
    return policy
