"""Shared data models for the animbox sandbox layer."""

from animbox.models.sandbox import (
    SUPPORTED_TEMPLATES,
    CommandResult,
    MediaUploadResult,
    SandboxFile,
    SandboxInstance,
    SandboxStatus,
    SandboxTemplate,
    utcnow,
)
from animbox.models.snapshot import SnapshotMetadata

__all__ = [
    "CommandResult",
    "MediaUploadResult",
    "SUPPORTED_TEMPLATES",
    "SandboxFile",
    "SandboxInstance",
    "SandboxStatus",
    "SandboxTemplate",
    "SnapshotMetadata",
    "utcnow",
]
