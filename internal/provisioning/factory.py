import os

from internal.provisioning.base import BackendError
from internal.provisioning.crossplane import CrossplaneBackend
from internal.provisioning.memory import InMemoryBackend

_memory_singleton = InMemoryBackend()


def get_backend(name: str | None = None):
    name = name or os.environ.get("BACKUP_BACKEND", "memory")
    if name == "memory":
        return _memory_singleton
    if name == "crossplane":
        return CrossplaneBackend(
            region=os.environ.get("AWS_REGION", "us-east-1"),
            account_id=os.environ.get("AWS_ACCOUNT_ID", ""),
        )
    raise BackendError(f"unknown provisioning backend '{name}'", backend=name)
