"""Snapshot storage interface."""

from __future__ import annotations

from typing import Protocol

from animbox.models.snapshot import SnapshotMetadata

LATEST = "latest"


class SnapshotStore(Protocol):
    """Storage-only persistence for exported sandbox archives.

    Stores accept and return archive bytes; moving them in and out of a
    sandbox is the provider's job.
    """

    def save(
        self,
        node_id: str,
        data: bytes,
        version_id: str = LATEST,
        engine: str = "remotion",
    ) -> SnapshotMetadata:
        ...

    def load(self, node_id: str, version_id: str | None = None) -> bytes | None:
        ...

    def exists(self, node_id: str, version_id: str | None = None) -> bool:
        ...

    def delete(self, node_id: str, version_id: str | None = None) -> None:
        ...

    def get_metadata(
        self, node_id: str, version_id: str | None = None
    ) -> SnapshotMetadata | None:
        ...
