"""Snapshot storage and the capture/restore round trip."""

from __future__ import annotations

from typing import Sequence

from loguru import logger

from animbox.config import Settings, load_settings
from animbox.models.snapshot import SnapshotMetadata
from animbox.providers.sandbox.base import SandboxProvider
from animbox.providers.snapshot.base import LATEST, SnapshotStore
from animbox.providers.snapshot.local import LocalSnapshotStore


def get_snapshot_store(settings: Settings | None = None) -> SnapshotStore:
    settings = settings or load_settings()
    return LocalSnapshotStore(settings.snapshot_path)


def capture_snapshot(
    provider: SandboxProvider,
    store: SnapshotStore,
    sandbox_id: str,
    node_id: str,
    version_id: str = LATEST,
    engine: str | None = None,
    paths: Sequence[str] | None = None,
) -> SnapshotMetadata:
    """Export the sandbox working tree and persist it under ``node_id``."""
    if engine is None:
        instance = provider.get_instance(sandbox_id)
        engine = (instance.template if instance else None) or "remotion"
    data = provider.export_snapshot(sandbox_id, paths)
    return store.save(node_id, data, version_id=version_id, engine=engine)


def restore_snapshot(
    provider: SandboxProvider,
    store: SnapshotStore,
    node_id: str,
    sandbox_id: str,
    version_id: str | None = None,
) -> bool:
    data = store.load(node_id, version_id)
    if data is None:
        logger.debug(f"No snapshot stored for {node_id}")
        return False
    restored = provider.import_snapshot(sandbox_id, data)
    if restored:
        logger.info(f"Restored snapshot {node_id} into {sandbox_id}")
    return restored


__all__ = [
    "LATEST",
    "LocalSnapshotStore",
    "SnapshotStore",
    "capture_snapshot",
    "get_snapshot_store",
    "restore_snapshot",
]
