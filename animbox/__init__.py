"""Sandbox orchestration for generated animation projects."""

from animbox.config import Settings, load_settings
from animbox.models import (
    CommandResult,
    MediaUploadResult,
    SandboxFile,
    SandboxInstance,
    SandboxStatus,
    SnapshotMetadata,
)
from animbox.providers.sandbox import (
    SandboxError,
    SandboxNotFoundError,
    SandboxProvider,
    get_sandbox_instance,
    get_sandbox_provider,
    read_sandbox_file_raw,
    reset_sandbox_provider,
)

__version__ = "0.1.0"

__all__ = [
    "CommandResult",
    "MediaUploadResult",
    "SandboxError",
    "SandboxFile",
    "SandboxInstance",
    "SandboxNotFoundError",
    "SandboxProvider",
    "SandboxStatus",
    "Settings",
    "SnapshotMetadata",
    "get_sandbox_instance",
    "get_sandbox_provider",
    "load_settings",
    "read_sandbox_file_raw",
    "reset_sandbox_provider",
]
