import logging

from internal.policy.serialize import fingerprint, to_document
from internal.provisioning.base import BackendError, DeploymentHandle, ProvisioningBackend

logger = logging.getLogger(__name__)


class InMemoryBackend(ProvisioningBackend):
    """Keeps applied policies in a dict keyed by vault id.

    Re-applying a policy with an unchanged fingerprint is a no-op.
    """
    name = "memory"

    def __init__(self):
        self._state = {}

    def apply(self, policy) -> DeploymentHandle:
        handle_id = policy.vault.id
        digest = fingerprint(policy)
        current = self._state.get(handle_id)
        if current and current["fingerprint"] == digest:
            logger.info("Policy for vault %s unchanged (%s), nothing to apply", handle_id, digest[:12])
            return DeploymentHandle(backend=self.name, id=handle_id, fingerprint=digest, changed=False)

        self._state[handle_id] = {
            "fingerprint": digest,
            "document": to_document(policy),
            "revision": (current or {}).get("revision", 0) + 1,
        }
        logger.info("Applied policy for vault %s revision %d", handle_id, self._state[handle_id]["revision"])
        return DeploymentHandle(
            backend=self.name,
            id=handle_id,
            fingerprint=digest,
            changed=True,
            resources=tuple(policy.tier_names()),
        )

    def status(self, handle_id: str) -> dict:
        state = self._state.get(handle_id)
        if state is None:
            raise BackendError(f"no deployment for '{handle_id}'", backend=self.name)
        return {
            "backend": self.name,
            "id": handle_id,
            "fingerprint": state["fingerprint"],
            "revision": state["revision"],
            "tiers": [t["name"] for t in state["document"]["tiers"]],
        }
