from abc import ABC, abstractmethod
from dataclasses import dataclass, field


class BackendError(Exception):
    """Failure reported by a provisioning backend. Never retried by the core."""

    def __init__(self, message: str, backend: str = "", cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.cause = cause

    def to_dict(self) -> dict:
        return {"error": "BackendError", "backend": self.backend, "message": self.message}


@dataclass(frozen=True)
class DeploymentHandle:
    backend: str
    id: str
    fingerprint: str
    changed: bool = True
    resources: tuple = field(default=(), compare=False)


class ProvisioningBackend(ABC):
    name = ""

    @abstractmethod
    def apply(self, policy) -> DeploymentHandle:
        raise NotImplementedError

    @abstractmethod
    def status(self, handle_id: str) -> dict:
        raise NotImplementedError
