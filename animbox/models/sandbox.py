"""Data models for sandbox interactions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

SandboxTemplate = Literal["theatre", "remotion"]
SUPPORTED_TEMPLATES: tuple[str, ...] = ("theatre", "remotion")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SandboxStatus(str, Enum):
    CREATING = "creating"
    READY = "ready"
    BUSY = "busy"
    DESTROYED = "destroyed"
    ERROR = "error"


@dataclass
class SandboxInstance:
    """Canonical descriptor of one sandbox.

    ``handle`` is the backend-native object (a container id for docker, an SDK
    sandbox for e2b). It never leaves the provider: it is excluded from
    ``repr``, equality and ``to_dict``.
    """

    id: str
    project_id: str
    status: SandboxStatus = SandboxStatus.CREATING
    template: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)
    port: Optional[int] = None
    proxy_base_url: Optional[str] = None
    handle: Any = field(default=None, repr=False, compare=False)

    def touch(self, now: datetime | None = None) -> None:
        now = now or utcnow()
        if now > self.last_activity_at:
            self.last_activity_at = now

    @property
    def endpoint(self) -> str | None:
        if self.status == SandboxStatus.DESTROYED:
            return None
        if self.proxy_base_url:
            return self.proxy_base_url
        if self.port is not None:
            return f"http://localhost:{self.port}"
        return None

    def mark_destroyed(self) -> None:
        self.status = SandboxStatus.DESTROYED
        self.port = None
        self.proxy_base_url = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "status": self.status.value,
            "template": self.template,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "port": self.port,
            "proxy_base_url": self.proxy_base_url,
            "endpoint": self.endpoint,
        }


@dataclass(frozen=True)
class SandboxFile:
    path: str
    type: Literal["file", "directory"]
    size: Optional[int] = None

    @property
    def is_dir(self) -> bool:
        return self.type == "directory"


@dataclass(frozen=True)
class CommandResult:
    success: bool
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int = 0
    timed_out: bool = False


@dataclass(frozen=True)
class MediaUploadResult:
    success: bool
    path: str
    size: Optional[int] = None
    error: Optional[str] = None
