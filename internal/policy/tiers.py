"""Tier registry and the stock Daily / Weekly / Monthly tiers.

Each tier defines:
  - A recurring schedule (six-field cron, reference zone UTC)
  - Start and completion windows, in minutes
  - Retention (delete after N days, optional cold-storage transition)
  - Tag selection rules that decide which resources it protects

Registration order is preserved: it drives validation order and the order
of tiers in the serialized plan.
"""

from typing import Optional

from internal.models.types import Operator, RetentionPolicy, SelectionRule, Tier
from internal.policy.errors import DuplicateTierName

DEFAULT_START_WINDOW_MINUTES = 480
DEFAULT_COMPLETION_WINDOW_MINUTES = 10080  # 7 days


class TierRegistry:
    """Ordered set of uniquely named tiers."""

    def __init__(self, tiers=()):
        self._tiers: dict = {}
        for tier in tiers:
            self.register(tier)

    def register(self, tier: Tier) -> None:
        """Add a tier.

        Raises:
            DuplicateTierName: a tier with the same name is already registered.
        """
        if tier.name in self._tiers:
            raise DuplicateTierName(
                f"tier name '{tier.name}' is already registered",
                tier=tier.name, field="name",
            )
        self._tiers[tier.name] = tier

    def lookup(self, name: str) -> Optional[Tier]:
        return self._tiers.get(name)

    def all(self) -> list:
        return list(self._tiers.values())

    def __len__(self) -> int:
        return len(self._tiers)

    def __contains__(self, name) -> bool:
        return name in self._tiers


# ── Stock tiers ──────────────────────────────────────────────────────────────

def tag_rule(tier_name: str) -> SelectionRule:
    """`Backup-<Tier> == "true"`, the stock opt-in tag."""
    return SelectionRule(tag_key=f"Backup-{tier_name}", tag_value="true", operator=Operator.EQUALS)


def daily_tier(vault_id: str = "") -> Tier:
    return Tier(
        name="Daily",
        schedule="cron(0 5 * * ? *)",
        start_window_minutes=DEFAULT_START_WINDOW_MINUTES,
        completion_window_minutes=DEFAULT_COMPLETION_WINDOW_MINUTES,
        retention=RetentionPolicy(delete_after_days=30),
        selection=(tag_rule("Daily"),),
        target_vault_id=vault_id,
    )


def weekly_tier(vault_id: str = "") -> Tier:
    # Saturdays at 05:00
    return Tier(
        name="Weekly",
        schedule="cron(0 5 ? * 7 *)",
        start_window_minutes=DEFAULT_START_WINDOW_MINUTES,
        completion_window_minutes=DEFAULT_COMPLETION_WINDOW_MINUTES,
        retention=RetentionPolicy(delete_after_days=90),
        selection=(tag_rule("Weekly"),),
        target_vault_id=vault_id,
    )


def monthly_tier(vault_id: str = "") -> Tier:
    return Tier(
        name="Monthly",
        schedule="cron(0 5 1 * ? *)",
        start_window_minutes=DEFAULT_START_WINDOW_MINUTES,
        completion_window_minutes=DEFAULT_COMPLETION_WINDOW_MINUTES,
        retention=RetentionPolicy(
            delete_after_days=365,
            move_to_cold_storage_after_days=180,
            archive_eligible=True,
        ),
        selection=(tag_rule("Monthly"),),
        target_vault_id=vault_id,
    )


def default_tiers(vault_id: str = "") -> list:
    """Return the stock tiers in their canonical order."""
    return [daily_tier(vault_id), weekly_tier(vault_id), monthly_tier(vault_id)]
