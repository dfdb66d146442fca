"""Configuration errors raised while building a backup policy.

Every error carries the offending tier name and field when there is one,
so callers can report exactly what to fix.
"""

from typing import Optional


class ConfigError(Exception):
    """Base class for compile-time policy errors."""

    def __init__(self, message: str, tier: Optional[str] = None, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.tier = tier
        self.field = field

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "message": self.message,
            "tier": self.tier,
            "field": self.field,
        }


class DuplicateTierName(ConfigError):
    pass


class InvalidRetentionOrdering(ConfigError):
    pass


class ColdStorageDwellTooShort(ConfigError):
    pass


class UnparsableSchedule(ConfigError):
    pass


class InvalidWindow(ConfigError):
    pass


class InvalidSelection(ConfigError):
    pass


class InsufficientRolePermissions(ConfigError):
    def __init__(self, message: str, missing=(), unexpected=(), field: Optional[str] = "capabilities"):
        super().__init__(message, tier=None, field=field)
        self.missing = tuple(missing)
        self.unexpected = tuple(unexpected)


class KeyRotationDisabled(ConfigError):
    pass


class KeyPolicyViolation(ConfigError):
    pass


class MalformedConfig(ConfigError):
    pass


class UnknownVault(ConfigError):
    pass
