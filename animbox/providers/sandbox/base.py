"""Sandbox provider interface."""

from __future__ import annotations

import re
from typing import Protocol, Sequence
from uuid import uuid4

from animbox.models.sandbox import (
    CommandResult,
    MediaUploadResult,
    SandboxFile,
    SandboxInstance,
)
from animbox.providers.sandbox.errors import InvalidSandboxPathError
from animbox.providers.sandbox.registry import InstanceRegistry
from animbox.providers.sandbox.safety import relative_to_workdir, validate_path

DEFAULT_SNAPSHOT_PATHS: tuple[str, ...] = ("src", "public/media")
# find(1) -printf format: type, size, path
FIND_PRINTF = "%y\t%s\t%p\n"


class SandboxProvider(Protocol):
    name: str
    registry: InstanceRegistry

    def create(self, project_id: str, template: str | None = None) -> SandboxInstance:
        ...

    def destroy(self, sandbox_id: str) -> None:
        ...

    def write_file(self, sandbox_id: str, path: str, content: str) -> None:
        ...

    def read_file(self, sandbox_id: str, path: str) -> str:
        ...

    def write_binary(self, sandbox_id: str, path: str, data: bytes) -> None:
        ...

    def read_file_raw(self, sandbox_id: str, path: str) -> bytes:
        ...

    def list_files(
        self, sandbox_id: str, path: str = ".", recursive: bool = False
    ) -> list[SandboxFile]:
        ...

    def run_command(
        self,
        sandbox_id: str,
        command: str,
        *,
        background: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        ...

    def upload_media(
        self, sandbox_id: str, url: str, dest_path: str
    ) -> MediaUploadResult:
        ...

    def export_snapshot(
        self, sandbox_id: str, paths: Sequence[str] | None = None
    ) -> bytes:
        ...

    def import_snapshot(self, sandbox_id: str, data: bytes) -> bool:
        ...

    def get_status(self, sandbox_id: str) -> SandboxInstance | None:
        ...

    def get_instance(self, sandbox_id: str) -> SandboxInstance | None:
        ...


def clamp_timeout(timeout: float | None, default: float, ceiling: float) -> float:
    if timeout is None or timeout <= 0:
        timeout = default
    return min(timeout, ceiling)


def find_argv(target: str, recursive: bool) -> list[str]:
    argv = ["find", target, "-mindepth", "1"]
    if not recursive:
        argv.extend(["-maxdepth", "1"])
    argv.extend(["(", "-type", "f", "-o", "-type", "d", ")", "-printf", FIND_PRINTF])
    return argv


def parse_find_listing(output: str, workdir: str) -> list[SandboxFile]:
    entries: list[SandboxFile] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = line.split("\t", 2)
        if len(parts) != 3:
            continue
        kind, size, path = parts
        is_dir = kind == "d"
        entries.append(
            SandboxFile(
                path=relative_to_workdir(path, workdir),
                type="directory" if is_dir else "file",
                size=None if is_dir else parse_int(size),
            )
        )
    return entries


def parse_int(value: str) -> int | None:
    try:
        return int(value.strip())
    except (TypeError, ValueError):
        return None


def new_sandbox_id(prefix: str, project_id: str) -> str:
    slug = re.sub(r"[^a-zA-Z0-9_.-]+", "-", project_id).strip("-.") or "project"
    return f"{prefix}{slug}-{uuid4().hex[:8]}"


def snapshot_paths(paths: Sequence[str] | None) -> list[str]:
    selected = list(paths) if paths else list(DEFAULT_SNAPSHOT_PATHS)
    for path in selected:
        validate_path(path)
        if path.startswith("/"):
            raise InvalidSandboxPathError(
                f"Snapshot paths must be relative to the working root: {path}"
            )
    return selected


def temp_archive_path() -> str:
    return f"/tmp/animbox-snapshot-{uuid4().hex[:12]}.tar.gz"
