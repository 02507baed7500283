"""Data models for stored sandbox snapshots."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class SnapshotMetadata:
    node_id: str
    version_id: str
    engine: str
    created_at: str
    file_count: int
    size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SnapshotMetadata":
        return cls(
            node_id=str(data["node_id"]),
            version_id=str(data.get("version_id", "latest")),
            engine=str(data.get("engine", "remotion")),
            created_at=str(data.get("created_at", "")),
            file_count=int(data.get("file_count", 0)),
            size_bytes=int(data.get("size_bytes", 0)),
        )
