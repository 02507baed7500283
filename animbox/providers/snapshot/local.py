"""On-disk snapshot store.

Layout::

    <base>/<node_id>/<version_id>/code.tar.gz
    <base>/<node_id>/<version_id>/metadata.json

Saving a named version also refreshes ``latest``.
"""

from __future__ import annotations

import json
import shutil
import threading
from pathlib import Path

from loguru import logger

from animbox.models.sandbox import utcnow
from animbox.models.snapshot import SnapshotMetadata
from animbox.providers.sandbox.safety import validate_snapshot_archive, validate_storage_key
from animbox.providers.snapshot.base import LATEST, SnapshotStore

ARCHIVE_NAME = "code.tar.gz"
METADATA_NAME = "metadata.json"


class LocalSnapshotStore(SnapshotStore):
    def __init__(self, base_path: str | Path) -> None:
        self._base = Path(base_path)
        self._lock = threading.Lock()

    @property
    def base_path(self) -> Path:
        return self._base

    def save(
        self,
        node_id: str,
        data: bytes,
        version_id: str = LATEST,
        engine: str = "remotion",
    ) -> SnapshotMetadata:
        validate_storage_key(node_id)
        validate_storage_key(version_id)
        file_count = validate_snapshot_archive(data)
        metadata = SnapshotMetadata(
            node_id=node_id,
            version_id=version_id,
            engine=engine,
            created_at=utcnow().isoformat(),
            file_count=file_count,
            size_bytes=len(data),
        )
        with self._lock:
            self._write(self._version_dir(node_id, version_id), data, metadata)
            if version_id != LATEST:
                self._write(self._version_dir(node_id, LATEST), data, metadata)
        logger.info(
            f"Saved snapshot {node_id}@{version_id} "
            f"({file_count} files, {len(data) // 1024}KB)"
        )
        return metadata

    def load(self, node_id: str, version_id: str | None = None) -> bytes | None:
        archive = self._version_dir(node_id, version_id or LATEST) / ARCHIVE_NAME
        if not archive.is_file():
            return None
        return archive.read_bytes()

    def exists(self, node_id: str, version_id: str | None = None) -> bool:
        if version_id is not None:
            return (self._version_dir(node_id, version_id) / ARCHIVE_NAME).is_file()
        node_dir = self._node_dir(node_id)
        if not node_dir.is_dir():
            return False
        return any((child / ARCHIVE_NAME).is_file() for child in node_dir.iterdir())

    def delete(self, node_id: str, version_id: str | None = None) -> None:
        if version_id is None:
            target = self._node_dir(node_id)
        else:
            target = self._version_dir(node_id, version_id)
        with self._lock:
            if target.exists():
                shutil.rmtree(target)
                logger.info(f"Deleted snapshot {node_id}@{version_id or '*'}")

    def get_metadata(
        self, node_id: str, version_id: str | None = None
    ) -> SnapshotMetadata | None:
        path = self._version_dir(node_id, version_id or LATEST) / METADATA_NAME
        if not path.is_file():
            return None
        try:
            return SnapshotMetadata.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning(f"Corrupt snapshot metadata at {path}: {exc}")
            return None

    def _node_dir(self, node_id: str) -> Path:
        return self._base / validate_storage_key(node_id)

    def _version_dir(self, node_id: str, version_id: str) -> Path:
        return self._node_dir(node_id) / validate_storage_key(version_id)

    def _write(self, directory: Path, data: bytes, metadata: SnapshotMetadata) -> None:
        directory.mkdir(parents=True, exist_ok=True)
        staging = directory / f".{ARCHIVE_NAME}.tmp"
        staging.write_bytes(data)
        staging.replace(directory / ARCHIVE_NAME)
        (directory / METADATA_NAME).write_text(
            json.dumps(metadata.to_dict(), indent=2), encoding="utf-8"
        )
