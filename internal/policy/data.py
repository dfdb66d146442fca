"""YAML policy configuration.

The store reads the document once and caches it; `reload()` re-reads it.
`build_inputs()` turns the raw document into compiler inputs and reports
shape problems as MalformedConfig with the offending field path.
"""

import logging
import os

import yaml

from internal.models.types import (
    REQUIRED_CAPABILITIES,
    EncryptionKey, ExecutionRole, KeyGrant, RetentionPolicy, SelectionRule, Tier, Vault,
)
from internal.policy.compiler import CompilerSettings, compile_policy
from internal.policy.errors import ConfigError, MalformedConfig
from internal.policy.selection import parse_operator
from internal.policy.tiers import (
    DEFAULT_COMPLETION_WINDOW_MINUTES, DEFAULT_START_WINDOW_MINUTES,
)

logger = logging.getLogger(__name__)

DEFAULT_POLICY_PATH = "config/policy.yaml"


class PolicyStore:
    def __init__(self, path: str | None = None):
        self.path = path or os.environ.get("BACKUP_POLICY_PATH", DEFAULT_POLICY_PATH)
        self._cache = None

    def load(self) -> dict:
        if self._cache is None:
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    self._cache = yaml.safe_load(f) or {}
            except OSError as exc:
                raise MalformedConfig(f"cannot read policy file {self.path}: {exc}") from exc
            except yaml.YAMLError as exc:
                raise MalformedConfig(f"policy file {self.path} is not valid YAML: {exc}") from exc
            if not isinstance(self._cache, dict):
                self._cache = None
                raise MalformedConfig(f"policy file {self.path} must contain a mapping")
            logger.info("Loaded policy configuration from %s", self.path)
        return self._cache

    def reload(self) -> dict:
        self._cache = None
        return self.load()


policy_store = PolicyStore()


# ── Document → compiler inputs ───────────────────────────────────────────────

def _require(doc: dict, key: str, path: str, tier: str | None = None):
    if not isinstance(doc, dict) or key not in doc or doc[key] is None:
        raise MalformedConfig(f"{path}.{key} is required", tier=tier, field=f"{path}.{key}")
    return doc[key]


def _mapping(value, path: str, tier: str | None = None) -> dict:
    if not isinstance(value, dict):
        raise MalformedConfig(f"{path} must be a mapping, got {value!r}", tier=tier, field=path)
    return value


def _integer(value, path: str, tier: str | None = None) -> int:
    # YAML booleans load as bool, which is an int subclass
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedConfig(f"{path} must be an integer, got {value!r}", tier=tier, field=path)
    return value


def _text(value, path: str, tier: str | None = None) -> str:
    if not isinstance(value, str):
        raise MalformedConfig(f"{path} must be a string, got {value!r}", tier=tier, field=path)
    return value


def _strings(value, path: str, tier: str | None = None) -> tuple:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise MalformedConfig(f"{path} must be a list of strings, got {value!r}", tier=tier, field=path)
    return tuple(value)


def _build_key(doc) -> EncryptionKey:
    path = "vault.encryptionKey"
    doc = _mapping(doc, path)
    kwargs = {}
    grants = doc.get("grants")
    if grants is not None:
        if not isinstance(grants, list):
            raise MalformedConfig(f"{path}.grants must be a list", field=f"{path}.grants")
        built = []
        for i, g in enumerate(grants):
            grant_path = f"{path}.grants[{i}]"
            g = _mapping(g, grant_path)
            built.append(KeyGrant(
                principal=str(_require(g, "principal", grant_path)),
                actions=_strings(_require(g, "actions", grant_path), f"{grant_path}.actions"),
            ))
        kwargs["grants"] = tuple(built)
    return EncryptionKey(
        id=str(_require(doc, "id", path)),
        alias=_text(doc.get("alias", ""), f"{path}.alias"),
        rotation_enabled=bool(doc.get("rotationEnabled", True)),
        retain_on_delete=bool(doc.get("retainOnDelete", True)),
        description=_text(doc.get("description", ""), f"{path}.description"),
        **kwargs,
    )


def _build_retention(doc, path: str, tier: str) -> RetentionPolicy:
    doc = _mapping(doc, path, tier=tier)
    cold = doc.get("moveToColdStorageAfterDays")
    if cold is not None:
        cold = _integer(cold, f"{path}.moveToColdStorageAfterDays", tier=tier)
    return RetentionPolicy(
        delete_after_days=_integer(
            _require(doc, "deleteAfterDays", path, tier=tier), f"{path}.deleteAfterDays", tier=tier,
        ),
        move_to_cold_storage_after_days=cold,
        archive_eligible=bool(doc.get("archiveEligible", False)),
    )


def _build_tier(doc, index: int) -> Tier:
    path = f"tiers[{index}]"
    doc = _mapping(doc, path)
    name = _require(doc, "name", path)
    retention = _require(doc, "retention", path, tier=name)
    selection = _require(doc, "selection", path, tier=name)
    if not isinstance(selection, list):
        raise MalformedConfig(f"{path}.selection must be a list", tier=name, field=f"{path}.selection")
    try:
        rules = tuple(
            SelectionRule(
                tag_key=str(_require(r, "key", f"{path}.selection", tier=name)),
                tag_value=str(_require(r, "value", f"{path}.selection", tier=name)),
                operator=parse_operator(r.get("operator")),
            )
            for r in selection
        )
    except ValueError as exc:
        raise MalformedConfig(f"{path}.selection: {exc}", tier=name, field=f"{path}.selection") from exc
    return Tier(
        name=str(name),
        schedule=str(_require(doc, "schedule", path, tier=name)),
        start_window_minutes=doc.get("startWindowMinutes", DEFAULT_START_WINDOW_MINUTES),
        completion_window_minutes=doc.get("completionWindowMinutes", DEFAULT_COMPLETION_WINDOW_MINUTES),
        retention=_build_retention(retention, f"{path}.retention", tier=name),
        selection=rules,
        target_vault_id=_text(doc.get("targetVault", ""), f"{path}.targetVault", tier=name),
    )


def _settings_doc(doc: dict) -> dict:
    raw = doc.get("settings")
    return {} if raw is None else _mapping(raw, "settings")


def build_settings(doc: dict) -> CompilerSettings:
    raw = _settings_doc(doc)
    defaults = CompilerSettings()
    return CompilerSettings(
        min_cold_storage_days=_integer(
            raw.get("minColdStorageDays", defaults.min_cold_storage_days), "settings.minColdStorageDays",
        ),
        max_run_horizon_minutes=_integer(
            raw.get("maxRunHorizonMinutes", defaults.max_run_horizon_minutes), "settings.maxRunHorizonMinutes",
        ),
        timezone=os.environ.get("BACKUP_TIMEZONE") or _text(
            raw.get("timezone", defaults.timezone), "settings.timezone",
        ),
        max_workers=_integer(raw.get("maxWorkers", defaults.max_workers), "settings.maxWorkers"),
    )


def build_inputs(doc: dict):
    """Return (vault, role, tiers, settings) from a configuration document."""
    vault_doc = _mapping(_require(doc, "vault", "policy"), "vault")
    role_doc = _mapping(_require(doc, "role", "policy"), "role")
    tiers_doc = _require(doc, "tiers", "policy")
    if not isinstance(tiers_doc, list) or not tiers_doc:
        raise MalformedConfig("policy.tiers must be a non-empty list", field="policy.tiers")

    vault = Vault(
        id=str(_require(vault_doc, "id", "vault")),
        encryption_key=_build_key(_require(vault_doc, "encryptionKey", "vault")),
        retain_on_delete=bool(vault_doc.get("retainOnDelete", True)),
    )
    capabilities = role_doc.get("capabilities")
    role = ExecutionRole(
        id=str(_require(role_doc, "id", "role")),
        capabilities=(
            REQUIRED_CAPABILITIES if capabilities is None
            else _strings(capabilities, "role.capabilities")
        ),
    )
    tiers = [_build_tier(t, i) for i, t in enumerate(tiers_doc)]
    return vault, role, tiers, build_settings(doc)


def backend_name(doc: dict) -> str:
    return os.environ.get("BACKUP_BACKEND") or _text(
        _settings_doc(doc).get("backend", "memory"), "settings.backend",
    )


def load_policy(store: PolicyStore | None = None):
    """Load the configured document and compile it.

    Raises:
        ConfigError: malformed configuration or a failed compile.
    """
    store = store or policy_store
    doc = store.load()
    vault, role, tiers, settings = build_inputs(doc)
    try:
        return compile_policy(vault, role, tiers, settings)
    except ConfigError as exc:
        logger.warning("Policy %s failed to compile: %s", store.path, exc)
        raise
