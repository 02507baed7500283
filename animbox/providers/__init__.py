"""Provider package for sandbox backends and snapshot storage."""

from animbox.providers.sandbox import (
    E2BProvider,
    LocalProvider,
    SandboxProvider,
    create_provider,
    get_sandbox_provider,
)
from animbox.providers.snapshot import LocalSnapshotStore, SnapshotStore, get_snapshot_store

__all__ = [
    "E2BProvider",
    "LocalProvider",
    "LocalSnapshotStore",
    "SandboxProvider",
    "SnapshotStore",
    "create_provider",
    "get_sandbox_provider",
    "get_snapshot_store",
]
