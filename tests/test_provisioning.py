"""Tests for the provisioning backends."""

import json
import os
import sys

import pytest

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from internal.k8s import client as k8s_client
from internal.models.types import EncryptionKey, ExecutionRole, Vault
from internal.policy.compiler import compile_policy
from internal.policy.serialize import fingerprint
from internal.policy.tiers import default_tiers
from internal.provisioning import factory
from internal.provisioning.base import BackendError
from internal.provisioning.crossplane import CrossplaneBackend, k8s_name
from internal.provisioning.memory import InMemoryBackend


def _policy(tiers=None, vault_id="my-backup-vault"):
    return compile_policy(
        Vault(vault_id, EncryptionKey("backup-key", alias="alias/my-backup-key")),
        ExecutionRole("mybackupOperator"),
        default_tiers() if tiers is None else tiers,
    )


class FakeApplier:
    def __init__(self, fail_on_kind=None):
        self.applied = []
        self.fail_on_kind = fail_on_kind

    def __call__(self, manifest):
        if manifest["kind"] == self.fail_on_kind:
            raise RuntimeError("ThrottlingException: Rate exceeded")
        self.applied.append(manifest)
        return manifest


def _by_kind(manifests, kind):
    return [m for m in manifests if m["kind"] == kind]


# ── In-memory backend ────────────────────────────────────────────────────────

def test_memory_apply_then_noop():
    backend = InMemoryBackend()
    first = backend.apply(_policy())
    assert first.changed is True
    assert first.id == "my-backup-vault"
    assert first.fingerprint == fingerprint(_policy())
    second = backend.apply(_policy())
    assert second.changed is False
    assert backend.status("my-backup-vault")["revision"] == 1


def test_memory_new_revision_on_change():
    backend = InMemoryBackend()
    backend.apply(_policy())
    handle = backend.apply(_policy(default_tiers()[:2]))
    assert handle.changed is True
    status = backend.status("my-backup-vault")
    assert status["revision"] == 2
    assert status["tiers"] == ["Daily", "Weekly"]


def test_memory_status_unknown_handle():
    with pytest.raises(BackendError):
        InMemoryBackend().status("nope")


# ── Crossplane backend ───────────────────────────────────────────────────────

def test_render_order():
    manifests = CrossplaneBackend().render(_policy())
    kinds = [m["kind"] for m in manifests]
    assert kinds[:6] == ["Key", "Alias", "Role", "RolePolicy", "RolePolicyAttachment", "RolePolicyAttachment"]
    assert kinds[6] == "Vault"
    assert kinds[7:] == ["Plan", "Selection"] * 3


def test_render_is_deterministic():
    assert CrossplaneBackend().render(_policy()) == CrossplaneBackend().render(_policy())


def test_key_rotation_and_retention():
    (key,) = _by_kind(CrossplaneBackend(account_id="123456789012").render(_policy()), "Key")
    assert key["spec"]["forProvider"]["enableKeyRotation"] is True
    assert key["spec"]["deletionPolicy"] == "Orphan"
    statement = json.loads(key["spec"]["forProvider"]["policy"])["Statement"][0]
    assert statement["Principal"] == {"AWS": "arn:aws:iam::123456789012:root"}
    assert statement["Action"] == ["kms:*"]


def test_role_and_permissions():
    manifests = CrossplaneBackend(account_id="123456789012").render(_policy())
    (role,) = _by_kind(manifests, "Role")
    trust = json.loads(role["spec"]["forProvider"]["assumeRolePolicy"])
    assert trust["Statement"][0]["Principal"] == {"Service": "backup.amazonaws.com"}
    assert role["metadata"]["annotations"]["crossplane.io/external-name"] == "mybackupOperator"
    assert "region" not in role["spec"]["forProvider"]

    (pass_role,) = _by_kind(manifests, "RolePolicy")
    statement = json.loads(pass_role["spec"]["forProvider"]["policy"])["Statement"][0]
    assert statement["Action"] == ["iam:GetRole", "iam:PassRole"]
    assert statement["Resource"] == "arn:aws:iam::123456789012:role/mybackupOperator"

    arns = [m["spec"]["forProvider"]["policyArn"] for m in _by_kind(manifests, "RolePolicyAttachment")]
    assert arns == [
        "arn:aws:iam::aws:policy/service-role/AWSBackupServiceRolePolicyForBackup",
        "arn:aws:iam::aws:policy/service-role/AWSBackupServiceRolePolicyForRestores",
    ]


def test_plan_lifecycle_and_schedule():
    plans = _by_kind(CrossplaneBackend().render(_policy()), "Plan")
    monthly = plans[2]["spec"]["forProvider"]
    assert monthly["name"] == "Monthly"
    (rule,) = monthly["rule"]
    assert rule["ruleName"] == "MonthlyBackups"
    assert rule["targetVaultName"] == "my-backup-vault"
    assert rule["schedule"] == "cron(0 5 1 * ? *)"
    assert rule["startWindow"] == 480
    assert rule["completionWindow"] == 10080
    assert rule["lifecycle"] == [{
        "deleteAfter": 365, "coldStorageAfter": 180, "optInToArchiveForSupportedResources": True,
    }]
    assert "scheduleExpressionTimezone" not in rule
    assert plans[0]["spec"]["forProvider"]["rule"][0]["lifecycle"] == [{"deleteAfter": 30}]


def test_selection_conditions():
    selections = _by_kind(CrossplaneBackend().render(_policy()), "Selection")
    weekly = selections[1]["spec"]["forProvider"]
    assert weekly["name"] == "Weekly-Backups"
    assert weekly["iamRoleArnRef"] == {"name": "mybackupoperator"}
    assert weekly["planIdRef"] == {"name": "my-backup-vault-weekly"}
    assert weekly["condition"] == [
        {"stringEquals": [{"key": "aws:ResourceTag/Backup-Weekly", "value": "true"}]}
    ]


def test_apply_uses_injected_applier_and_is_idempotent():
    applier = FakeApplier()
    backend = CrossplaneBackend(apply_fn=applier)
    handle = backend.apply(_policy())
    assert handle.changed is True
    assert len(applier.applied) == 13
    assert handle.resources[0] == "Key/backup-key"

    again = backend.apply(_policy())
    assert again.changed is False
    assert len(applier.applied) == 13
    assert backend.status("my-backup-vault")["fingerprint"] == handle.fingerprint


def test_apply_failure_becomes_backend_error():
    backend = CrossplaneBackend(apply_fn=FakeApplier(fail_on_kind="Vault"))
    with pytest.raises(BackendError) as exc:
        backend.apply(_policy())
    assert exc.value.backend == "crossplane"
    assert "Vault/my-backup-vault" in str(exc.value)
    assert isinstance(exc.value.cause, RuntimeError)
    with pytest.raises(BackendError):
        backend.status("my-backup-vault")


def test_apply_without_cluster(monkeypatch):
    monkeypatch.setattr(k8s_client, "init_client", lambda: False)
    with pytest.raises(BackendError):
        CrossplaneBackend().apply(_policy())


def test_k8s_name():
    assert k8s_name("alias/my-backup-key") == "alias-my-backup-key"
    assert k8s_name("MyBackupOperator") == "mybackupoperator"
    assert len(k8s_name("x" * 100)) == 63


# ── Factory ──────────────────────────────────────────────────────────────────

def test_factory(monkeypatch):
    monkeypatch.delenv("BACKUP_BACKEND", raising=False)
    assert factory.get_backend() is factory.get_backend("memory")
    assert isinstance(factory.get_backend("crossplane"), CrossplaneBackend)
    with pytest.raises(BackendError):
        factory.get_backend("tape-robot")
