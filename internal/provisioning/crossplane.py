"""Materialize a compiled backup policy as Crossplane managed resources.

Renders Upbound provider-aws resources, in this order:
  1. kms Key, Alias              vault encryption key, rotation on
  2. iam Role                    execution role, assumable by the backup service
  3. iam RolePolicy              pass-role on the role itself
  4. iam RolePolicyAttachment    managed backup and restore policies (two)
  5. backup Vault                shared by every tier
  6. backup Plan, Selection      one pair per tier, in tier order

Each manifest is applied through `apply_fn` (server-side apply via the
Kubernetes client by default). Resources whose model says retain-on-delete
get `deletionPolicy: Orphan` so removing the claim never destroys them.
"""

import json
import logging
import re

from internal.k8s import client as k8s
from internal.models.types import ACCOUNT_ROOT_PRINCIPAL, Operator
from internal.policy.serialize import fingerprint
from internal.provisioning.base import BackendError, DeploymentHandle, ProvisioningBackend

logger = logging.getLogger(__name__)

KMS_API = "kms.aws.upbound.io/v1beta1"
IAM_API = "iam.aws.upbound.io/v1beta1"
BACKUP_API = "backup.aws.upbound.io/v1beta1"

BACKUP_SERVICE_PRINCIPAL = "backup.amazonaws.com"
EXTERNAL_NAME = "crossplane.io/external-name"

# Managed policies granting the perform-backup / perform-restore capabilities
_MANAGED_POLICIES = {
    "backup": "arn:aws:iam::aws:policy/service-role/AWSBackupServiceRolePolicyForBackup",
    "restores": "arn:aws:iam::aws:policy/service-role/AWSBackupServiceRolePolicyForRestores",
}

_CONDITION_KEYS = {
    Operator.EQUALS: "stringEquals",
    Operator.NOT_EQUALS: "stringNotEquals",
    Operator.LIKE: "stringLike",
    Operator.NOT_LIKE: "stringNotLike",
}


def k8s_name(value: str) -> str:
    name = re.sub(r"[^a-z0-9-]+", "-", value.lower()).strip("-")
    return name[:63].rstrip("-") or "unnamed"


def _policy_json(doc: dict) -> str:
    return json.dumps(doc, separators=(",", ":"))


class CrossplaneBackend(ProvisioningBackend):
    name = "crossplane"

    def __init__(self, region: str = "us-east-1", account_id: str = "",
                 provider_config: str = "default", apply_fn=None):
        self.region = region
        self.account_id = account_id
        self.provider_config = provider_config
        self._apply_fn = apply_fn
        self._deployments = {}

    # ── Rendering ────────────────────────────────────────────────────────────

    def _manifest(self, api_version: str, kind: str, name: str, for_provider: dict,
                  external_name: str = "", retain: bool = False, regional: bool = True) -> dict:
        metadata = {
            "name": name,
            "labels": {"backup.platform.example.org/managed": "true"},
        }
        if external_name:
            metadata["annotations"] = {EXTERNAL_NAME: external_name}
        # IAM is global: its resources take no region
        spec = {"forProvider": {"region": self.region, **for_provider} if regional else dict(for_provider)}
        if retain:
            spec["deletionPolicy"] = "Orphan"
        spec["providerConfigRef"] = {"name": self.provider_config}
        return {"apiVersion": api_version, "kind": kind, "metadata": metadata, "spec": spec}

    def _principal_arn(self, principal: str) -> str:
        if principal == ACCOUNT_ROOT_PRINCIPAL:
            return f"arn:aws:iam::{self.account_id or '*'}:root"
        return principal

    def render_key(self, vault) -> list:
        key = vault.encryption_key
        key_policy = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Sid": f"Grant{i}",
                    "Effect": "Allow",
                    "Principal": {"AWS": self._principal_arn(g.principal)},
                    "Action": list(g.actions),
                    "Resource": "*",
                }
                for i, g in enumerate(key.grants)
            ],
        }
        manifests = [self._manifest(
            KMS_API, "Key", k8s_name(key.id),
            {
                "description": key.description or f"Backup encryption key for {vault.id}",
                "enableKeyRotation": key.rotation_enabled,
                "isEnabled": True,
                "policy": _policy_json(key_policy),
            },
            retain=key.retain_on_delete,
        )]
        if key.alias:
            manifests.append(self._manifest(
                KMS_API, "Alias", k8s_name(key.alias),
                {"targetKeyIdRef": {"name": k8s_name(key.id)}},
                external_name=key.alias,
                retain=key.retain_on_delete,
            ))
        return manifests

    def render_role(self, role) -> list:
        role_name = k8s_name(role.id)
        role_arn = f"arn:aws:iam::{self.account_id or '*'}:role/{role.id}"
        trust = {
            "Version": "2012-10-17",
            "Statement": [{
                "Effect": "Allow",
                "Principal": {"Service": BACKUP_SERVICE_PRINCIPAL},
                "Action": "sts:AssumeRole",
            }],
        }
        pass_role = {
            "Version": "2012-10-17",
            "Statement": [{
                "Effect": "Allow",
                "Action": ["iam:GetRole", "iam:PassRole"],
                "Resource": role_arn,
            }],
        }
        manifests = [
            self._manifest(IAM_API, "Role", role_name,
                           {"assumeRolePolicy": _policy_json(trust)}, external_name=role.id, regional=False),
            self._manifest(IAM_API, "RolePolicy", f"{role_name}-passrole",
                           {"roleRef": {"name": role_name}, "policy": _policy_json(pass_role)}, regional=False),
        ]
        for suffix, arn in _MANAGED_POLICIES.items():
            manifests.append(self._manifest(
                IAM_API, "RolePolicyAttachment", f"{role_name}-{suffix}",
                {"roleRef": {"name": role_name}, "policyArn": arn},
                regional=False,
            ))
        return manifests

    def render_vault(self, vault) -> dict:
        return self._manifest(
            BACKUP_API, "Vault", k8s_name(vault.id),
            {"kmsKeyArnRef": {"name": k8s_name(vault.encryption_key.id)}},
            external_name=vault.id,
            retain=vault.retain_on_delete,
        )

    def render_tier(self, policy, tier) -> list:
        plan_name = k8s_name(f"{policy.vault.id}-{tier.name}")
        lifecycle = {"deleteAfter": tier.retention.delete_after_days}
        if tier.retention.move_to_cold_storage_after_days is not None:
            lifecycle["coldStorageAfter"] = tier.retention.move_to_cold_storage_after_days
        if tier.retention.archive_eligible:
            lifecycle["optInToArchiveForSupportedResources"] = True
        rule = {
            "ruleName": f"{tier.name}Backups",
            "targetVaultName": policy.vault.id,
            "schedule": tier.schedule,
            "startWindow": tier.start_window_minutes,
            "completionWindow": tier.completion_window_minutes,
            "lifecycle": [lifecycle],
        }
        if policy.timezone != "UTC":
            rule["scheduleExpressionTimezone"] = policy.timezone

        # condition blocks are AND-ed, matching the tier's selection semantics
        condition = {}
        for r in tier.selection:
            condition.setdefault(_CONDITION_KEYS[r.operator], []).append(
                {"key": f"aws:ResourceTag/{r.tag_key}", "value": r.tag_value}
            )
        return [
            self._manifest(BACKUP_API, "Plan", plan_name,
                           {"name": tier.name, "rule": [rule]}),
            self._manifest(BACKUP_API, "Selection", f"{plan_name}-selection", {
                "name": f"{tier.name}-Backups",
                "planIdRef": {"name": plan_name},
                "iamRoleArnRef": {"name": k8s_name(policy.role.id)},
                "resources": ["*"],
                "condition": [condition],
            }),
        ]

    def render(self, policy) -> list:
        manifests = self.render_key(policy.vault)
        manifests.extend(self.render_role(policy.role))
        manifests.append(self.render_vault(policy.vault))
        for tier in policy.tiers:
            manifests.extend(self.render_tier(policy, tier))
        return manifests

    # ── Apply ────────────────────────────────────────────────────────────────

    def _applier(self):
        if self._apply_fn is None:
            if not k8s.init_client():
                raise BackendError(
                    "Kubernetes is not reachable; cannot apply Crossplane resources",
                    backend=self.name,
                )
            self._apply_fn = k8s.apply_manifest
        return self._apply_fn

    def apply(self, policy) -> DeploymentHandle:
        handle_id = policy.vault.id
        digest = fingerprint(policy)
        previous = self._deployments.get(handle_id)
        if previous and previous["fingerprint"] == digest:
            logger.info("Policy for vault %s unchanged, skipping apply", handle_id)
            return DeploymentHandle(backend=self.name, id=handle_id, fingerprint=digest,
                                    changed=False, resources=previous["resources"])

        apply_fn = self._applier()
        applied = []
        for manifest in self.render(policy):
            ref = f"{manifest['kind']}/{manifest['metadata']['name']}"
            try:
                apply_fn(manifest)
            except BackendError:
                raise
            except Exception as exc:
                logger.error("Failed to apply %s: %s", ref, exc)
                raise BackendError(f"failed to apply {ref}: {exc}", backend=self.name, cause=exc) from exc
            applied.append(ref)
            logger.info("Applied %s", ref)

        self._deployments[handle_id] = {"fingerprint": digest, "resources": tuple(applied)}
        return DeploymentHandle(backend=self.name, id=handle_id, fingerprint=digest,
                                changed=True, resources=tuple(applied))

    def status(self, handle_id: str) -> dict:
        state = self._deployments.get(handle_id)
        if state is None:
            raise BackendError(f"no deployment for '{handle_id}'", backend=self.name)
        return {
            "backend": self.name,
            "id": handle_id,
            "fingerprint": state["fingerprint"],
            "resources": list(state["resources"]),
        }
