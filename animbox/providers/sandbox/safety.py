"""Path and command guards used before any sandbox I/O.

Commands are always assembled as argument vectors. Backends that can only
accept a shell string (e2b) render the vector with ``shell_command`` so every
argument is quoted exactly once.
"""

from __future__ import annotations

import io
import posixpath
import shlex
import tarfile
from typing import Mapping, Sequence
from urllib.parse import urlparse

from animbox.providers.sandbox.errors import InvalidSandboxPathError

DEFAULT_WORKDIR = "/app"


def validate_path(path: str) -> str:
    if not isinstance(path, str) or not path.strip():
        raise InvalidSandboxPathError("Invalid sandbox path: path is empty")
    if "\0" in path:
        raise InvalidSandboxPathError(f"Invalid sandbox path: {path!r} contains a null byte")
    if ".." in path:
        raise InvalidSandboxPathError(f"Invalid sandbox path: {path}")
    return path


def resolve_sandbox_path(path: str, workdir: str = DEFAULT_WORKDIR) -> str:
    validate_path(path)
    if path.startswith("/"):
        return posixpath.normpath(path)
    return posixpath.normpath(posixpath.join(workdir, path))


def relative_to_workdir(path: str, workdir: str = DEFAULT_WORKDIR) -> str:
    prefix = workdir.rstrip("/") + "/"
    if path.startswith(prefix):
        return path[len(prefix):]
    return path


def validate_media_url(url: str) -> str:
    if not isinstance(url, str) or any(ch.isspace() for ch in url) or "\0" in url:
        raise InvalidSandboxPathError(f"Invalid media URL: {url!r}")
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise InvalidSandboxPathError(f"Media URL must be http(s): {url}")
    return url


def build_env_prefix(path_entries: Sequence[str], env: Mapping[str, str]) -> str:
    """Shell prefix exported ahead of every user command.

    Toolchain binaries (bun, chromium) are not reliably on PATH through
    container environment inheritance, so each command re-exports them.
    """
    parts: list[str] = []
    if path_entries:
        joined = ":".join(shlex.quote(entry) for entry in path_entries)
        parts.append(f"export PATH={joined}:\"$PATH\"")
    for key, value in env.items():
        if not key.replace("_", "").isalnum():
            raise ValueError(f"Invalid environment variable name: {key}")
        parts.append(f"export {key}={shlex.quote(value)}")
    if not parts:
        return ""
    return " && ".join(parts) + " && "


def shell_command(argv: Sequence[str]) -> str:
    return shlex.join(list(argv))


def validate_storage_key(key: str) -> str:
    if (
        not isinstance(key, str)
        or not key
        or key in {".", ".."}
        or "/" in key
        or "\\" in key
        or "\0" in key
    ):
        raise InvalidSandboxPathError(f"Invalid snapshot key: {key!r}")
    return key


def validate_snapshot_archive(data: bytes) -> int:
    """Check that ``data`` is a gzip tar safe to unpack over the working root.

    Returns the number of regular files in the archive.
    """
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
            members = archive.getmembers()
    except (tarfile.TarError, OSError, EOFError) as exc:
        raise InvalidSandboxPathError(f"Snapshot is not a gzip tar archive: {exc}") from exc
    file_count = 0
    for member in members:
        name = member.name
        if name.startswith("/") or "\0" in name or ".." in name.split("/"):
            raise InvalidSandboxPathError(f"Unsafe snapshot member: {name}")
        if not (member.isfile() or member.isdir()):
            raise InvalidSandboxPathError(f"Unsupported snapshot member type: {name}")
        if member.isfile():
            file_count += 1
    return file_count
