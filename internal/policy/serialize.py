"""Serialized policy format.

  {
    "vault": {"id", "encryptionKeyId"},
    "role": {"id", "capabilities": [...]},
    "tiers": [
      {"name", "schedule", "startWindowMinutes", "completionWindowMinutes",
       "retention": {"deleteAfterDays", "moveToColdStorageAfterDays"?, "archiveEligible"},
       "selection": [{"key", "value", "operator"?}]}
    ],
    "timezone"
  }

Tiers appear in registration order and keys in the order above, which keeps
the output byte-identical for identical inputs. `operator` is only written
for non-EQUALS rules.
"""

import hashlib
import json

from internal.models.types import (
    EncryptionKey, ExecutionRole, Operator, Policy, RetentionPolicy,
    SelectionRule, Tier, Vault,
)
from internal.policy.errors import MalformedConfig


def _retention_doc(retention: RetentionPolicy) -> dict:
    doc = {"deleteAfterDays": retention.delete_after_days}
    if retention.move_to_cold_storage_after_days is not None:
        doc["moveToColdStorageAfterDays"] = retention.move_to_cold_storage_after_days
    doc["archiveEligible"] = bool(retention.archive_eligible)
    return doc


def _rule_doc(rule: SelectionRule) -> dict:
    doc = {"key": rule.tag_key, "value": rule.tag_value}
    if rule.operator != Operator.EQUALS:
        doc["operator"] = rule.operator.value
    return doc


def to_document(policy: Policy) -> dict:
    return {
        "vault": {
            "id": policy.vault.id,
            "encryptionKeyId": policy.vault.encryption_key.id,
        },
        "role": {
            "id": policy.role.id,
            "capabilities": list(policy.role.capabilities),
        },
        "tiers": [
            {
                "name": t.name,
                "schedule": t.schedule,
                "startWindowMinutes": t.start_window_minutes,
                "completionWindowMinutes": t.completion_window_minutes,
                "retention": _retention_doc(t.retention),
                "selection": [_rule_doc(r) for r in t.selection],
            }
            for t in policy.tiers
        ],
        "timezone": policy.timezone,
    }


def dumps(policy: Policy) -> str:
    return json.dumps(to_document(policy), indent=2, ensure_ascii=True) + "\n"


def fingerprint(policy: Policy) -> str:
    """SHA-256 of the serialized plan; equal plans have equal fingerprints."""
    return hashlib.sha256(dumps(policy).encode("utf-8")).hexdigest()


def from_document(doc: dict) -> Policy:
    """Rebuild a Policy from its serialized form.

    The document is trusted to come from a previous compile; key grants and
    alias are not part of the format and take their defaults.
    """
    try:
        vault_doc = doc["vault"]
        role_doc = doc["role"]
        tiers = tuple(
            Tier(
                name=t["name"],
                schedule=t["schedule"],
                start_window_minutes=t["startWindowMinutes"],
                completion_window_minutes=t["completionWindowMinutes"],
                retention=RetentionPolicy(
                    delete_after_days=t["retention"]["deleteAfterDays"],
                    move_to_cold_storage_after_days=t["retention"].get("moveToColdStorageAfterDays"),
                    archive_eligible=t["retention"].get("archiveEligible", False),
                ),
                selection=tuple(
                    SelectionRule(
                        tag_key=r["key"],
                        tag_value=r["value"],
                        operator=Operator(r.get("operator", "EQUALS")),
                    )
                    for r in t.get("selection", [])
                ),
                target_vault_id=vault_doc["id"],
            )
            for t in doc["tiers"]
        )
        return Policy(
            vault=Vault(id=vault_doc["id"], encryption_key=EncryptionKey(id=vault_doc["encryptionKeyId"])),
            role=ExecutionRole(id=role_doc["id"], capabilities=tuple(role_doc["capabilities"])),
            tiers=tiers,
            timezone=doc.get("timezone", "UTC"),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedConfig(f"invalid serialized policy: {exc}") from exc


def loads(text: str) -> Policy:
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedConfig(f"serialized policy is not valid JSON: {exc}") from exc
    return from_document(doc)
