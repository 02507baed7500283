"""Local sandbox provider driving containers through the docker CLI."""

from __future__ import annotations

from datetime import datetime, timezone
import json
import posixpath
import re
import threading
import time
from typing import Any, Sequence

from loguru import logger

from animbox.config import Settings
from animbox.models.sandbox import (
    CommandResult,
    MediaUploadResult,
    SandboxFile,
    SandboxInstance,
    SandboxStatus,
    utcnow,
)
from animbox.providers.sandbox.base import (
    SandboxProvider,
    clamp_timeout,
    find_argv,
    new_sandbox_id,
    parse_find_listing,
    parse_int,
    snapshot_paths,
    temp_archive_path,
)
from animbox.providers.sandbox.errors import (
    InvalidSandboxPathError,
    SandboxError,
    SandboxNotFoundError,
    SandboxOperationError,
    SandboxProvisioningError,
    UnsupportedTemplateError,
)
from animbox.providers.sandbox.ports import PortPool
from animbox.providers.sandbox.process import ProcessResult, ProcessRunner, SubprocessRunner
from animbox.providers.sandbox.registry import InstanceRegistry
from animbox.providers.sandbox.safety import (
    build_env_prefix,
    resolve_sandbox_path,
    validate_media_url,
    validate_snapshot_archive,
)

LABEL_MANAGED = "animbox.managed"
LABEL_PROJECT = "animbox.project"
LABEL_TEMPLATE = "animbox.template"
LABEL_PORT = "animbox.port"

CREATE_TIMEOUT_SEC = 120.0
CONTROL_TIMEOUT_SEC = 15.0
# `sh -c` script that writes stdin to $1; the path is never interpolated.
WRITE_STDIN_SCRIPT = 'cat > "$1"'

# docker state -> remediation verb
_REMEDIATION = {
    "created": "start",
    "exited": "restart",
    "paused": "unpause",
}


class LocalProvider(SandboxProvider):
    name = "docker"

    def __init__(
        self,
        settings: Settings | None = None,
        registry: InstanceRegistry | None = None,
        runner: ProcessRunner | None = None,
        ports: PortPool | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self.registry = registry if registry is not None else InstanceRegistry()
        self._runner = runner or SubprocessRunner()
        self._ports = ports or PortPool(
            self._settings.port_range_start, self._settings.port_range_end
        )
        self._env_prefix = build_env_prefix(
            self._settings.path_prefix, self._settings.command_env
        )
        self._network_ready = False
        self._network_lock = threading.Lock()

    @property
    def ports(self) -> PortPool:
        return self._ports

    def create(self, project_id: str, template: str | None = None) -> SandboxInstance:
        settings = self._settings
        template = template or settings.default_template
        image = self._image_for(template)
        sandbox_id = new_sandbox_id(settings.container_prefix, project_id)
        port = self._ports.allocate(exclude=self._live_ports())
        instance = SandboxInstance(
            id=sandbox_id, project_id=project_id, template=template, port=port
        )
        self.registry.put(instance)

        try:
            self._ensure_network()
            result = self._docker(
                [
                    "run",
                    "-d",
                    "--name", sandbox_id,
                    "--workdir", settings.workdir,
                    "--memory", settings.memory_limit,
                    "--memory-swap", settings.memory_swap_limit,
                    "--cpus", settings.cpus,
                    "--network", settings.network_name,
                    "--label", f"{LABEL_MANAGED}=true",
                    "--label", f"{LABEL_PROJECT}={project_id}",
                    "--label", f"{LABEL_TEMPLATE}={template}",
                    "--label", f"{LABEL_PORT}={port}",
                    "-p", f"{port}:{settings.dev_server_port}",
                    image,
                    "tail", "-f", "/dev/null",
                ],
                timeout=CREATE_TIMEOUT_SEC,
            )
            if not result.ok:
                raise SandboxProvisioningError(
                    f"docker run failed for {sandbox_id}: {result.stderr_text.strip()}",
                    hint=f"check that the Docker daemon is running and image {image} is built",
                )
            instance.handle = result.stdout_text.strip()
            self._probe_health(sandbox_id)
        except Exception as exc:
            self._rollback(sandbox_id, port)
            instance.status = SandboxStatus.ERROR
            instance.port = None
            if isinstance(exc, SandboxProvisioningError):
                raise
            raise SandboxProvisioningError(
                f"Failed to create sandbox {sandbox_id}: {exc}"
            ) from exc

        instance.status = SandboxStatus.READY
        logger.info(
            f"Created sandbox {sandbox_id} project={project_id} template={template} port={port}"
        )
        return instance

    def destroy(self, sandbox_id: str) -> None:
        instance = self.registry.remove(sandbox_id)
        port = instance.port if instance else None
        if instance is None:
            details = self._inspect(sandbox_id)
            if details is None or not _is_managed(details):
                return
            port = _label_port(details)

        result = self._docker(["rm", "-f", sandbox_id], timeout=CONTROL_TIMEOUT_SEC)
        if result.ok:
            logger.info(f"Destroyed sandbox {sandbox_id}")
        elif "No such container" in result.stderr_text:
            logger.debug(f"Sandbox {sandbox_id} was already removed")
        else:
            logger.warning(f"docker rm failed for {sandbox_id}: {result.stderr_text.strip()}")
        self._ports.release(port)
        if instance is not None:
            instance.mark_destroyed()

    def write_file(self, sandbox_id: str, path: str, content: str) -> None:
        self.write_binary(sandbox_id, path, content.encode("utf-8"))

    def read_file(self, sandbox_id: str, path: str) -> str:
        return self.read_file_raw(sandbox_id, path).decode("utf-8", errors="replace")

    def write_binary(self, sandbox_id: str, path: str, data: bytes) -> None:
        target = resolve_sandbox_path(path, self._settings.workdir)
        self._require(sandbox_id)
        self._mkdir_parent(sandbox_id, target)
        result = self._exec(
            sandbox_id,
            ["sh", "-c", WRITE_STDIN_SCRIPT, "sh", target],
            input=data,
            interactive=True,
        )
        if not result.ok:
            raise SandboxOperationError(
                f"Failed to write {path} in {sandbox_id}: {result.stderr_text.strip()}"
            )

    def read_file_raw(self, sandbox_id: str, path: str) -> bytes:
        target = resolve_sandbox_path(path, self._settings.workdir)
        self._require(sandbox_id)
        result = self._exec(sandbox_id, ["cat", target])
        if not result.ok:
            raise SandboxOperationError(
                f"Failed to read {path} in {sandbox_id}: {result.stderr_text.strip()}"
            )
        return result.stdout

    def list_files(
        self, sandbox_id: str, path: str = ".", recursive: bool = False
    ) -> list[SandboxFile]:
        target = resolve_sandbox_path(path, self._settings.workdir)
        self._require(sandbox_id)
        result = self._exec(sandbox_id, find_argv(target, recursive))
        if not result.ok and not result.stdout:
            raise SandboxOperationError(
                f"Failed to list {path} in {sandbox_id}: {result.stderr_text.strip()}"
            )
        return parse_find_listing(result.stdout_text, self._settings.workdir)

    def run_command(
        self,
        sandbox_id: str,
        command: str,
        *,
        background: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        settings = self._settings
        timeout = clamp_timeout(
            timeout, settings.command_timeout_sec, settings.command_timeout_max_sec
        )
        self._require(sandbox_id)
        self.registry.set_status(sandbox_id, SandboxStatus.BUSY)
        start = time.monotonic()
        try:
            result = self._exec(
                sandbox_id,
                ["sh", "-c", self._env_prefix + command],
                timeout=timeout,
                detach=background,
            )
        finally:
            self.registry.set_status(
                sandbox_id, SandboxStatus.READY, only_if=SandboxStatus.BUSY
            )
        duration_ms = int((time.monotonic() - start) * 1000)

        if result.timed_out:
            logger.warning(f"Command timed out after {timeout}s in {sandbox_id}: {command[:100]}")
        return CommandResult(
            success=result.ok,
            stdout=result.stdout_text,
            stderr=result.stderr_text,
            exit_code=result.returncode,
            duration_ms=duration_ms,
            timed_out=result.timed_out,
        )

    def upload_media(
        self, sandbox_id: str, url: str, dest_path: str
    ) -> MediaUploadResult:
        target = resolve_sandbox_path(dest_path, self._settings.workdir)
        validate_media_url(url)
        self._require(sandbox_id)
        self._mkdir_parent(sandbox_id, target)

        result = self._exec(
            sandbox_id,
            ["curl", "-fsSL", "-o", target, url],
            timeout=self._settings.media_timeout_sec,
        )
        if not result.ok:
            return MediaUploadResult(
                success=False,
                path=dest_path,
                error=f"Failed to download media: {result.stderr_text.strip()}",
            )
        size_result = self._exec(
            sandbox_id, ["stat", "-c", "%s", target], timeout=CONTROL_TIMEOUT_SEC
        )
        size = parse_int(size_result.stdout_text) if size_result.ok else None
        return MediaUploadResult(success=True, path=dest_path, size=size)

    def export_snapshot(
        self, sandbox_id: str, paths: Sequence[str] | None = None
    ) -> bytes:
        archive_paths = snapshot_paths(paths)
        self._require(sandbox_id)
        archive = temp_archive_path()
        timeout = self._settings.snapshot_timeout_sec
        try:
            tar = self._exec(
                sandbox_id,
                ["tar", "czf", archive, "-C", self._settings.workdir,
                 "--ignore-failed-read", *archive_paths],
                timeout=timeout,
            )
            if not tar.ok:
                # Missing directories make tar exit non-zero but still write the archive.
                logger.debug(f"tar reported for {sandbox_id}: {tar.stderr_text.strip()}")
            if not self._exec(sandbox_id, ["test", "-f", archive]).ok:
                raise SandboxOperationError(
                    f"Snapshot archive was not created in {sandbox_id}: {tar.stderr_text.strip()}"
                )
            data = self._exec(sandbox_id, ["cat", archive], timeout=timeout)
            if not data.ok:
                raise SandboxOperationError(
                    f"Failed to read snapshot archive from {sandbox_id}: {data.stderr_text.strip()}"
                )
        finally:
            self._exec(sandbox_id, ["rm", "-f", archive], timeout=CONTROL_TIMEOUT_SEC)
        logger.info(f"Exported snapshot from {sandbox_id} ({len(data.stdout)} bytes)")
        return data.stdout

    def import_snapshot(self, sandbox_id: str, data: bytes) -> bool:
        self._require(sandbox_id)
        try:
            file_count = validate_snapshot_archive(data)
        except InvalidSandboxPathError as exc:
            logger.warning(f"Rejected snapshot for {sandbox_id}: {exc}")
            return False

        archive = temp_archive_path()
        timeout = self._settings.snapshot_timeout_sec
        try:
            upload = self._exec(
                sandbox_id,
                ["sh", "-c", WRITE_STDIN_SCRIPT, "sh", archive],
                input=data,
                interactive=True,
                timeout=timeout,
            )
            if not upload.ok:
                logger.warning(f"Snapshot upload into {sandbox_id} failed: {upload.stderr_text.strip()}")
                return False
            extract = self._exec(
                sandbox_id,
                ["tar", "xzf", archive, "-C", self._settings.workdir],
                timeout=timeout,
            )
            if not extract.ok:
                logger.warning(f"Snapshot extract in {sandbox_id} failed: {extract.stderr_text.strip()}")
                return False
        finally:
            self._exec(sandbox_id, ["rm", "-f", archive], timeout=CONTROL_TIMEOUT_SEC)
        logger.info(f"Imported snapshot into {sandbox_id} ({file_count} files)")
        return True

    def get_status(self, sandbox_id: str) -> SandboxInstance | None:
        instance = self.registry.get(sandbox_id)
        if instance is not None and instance.status == SandboxStatus.CREATING:
            # The container may not exist yet; create() settles the entry.
            return instance

        details = self._inspect(sandbox_id)
        if details is None or not _is_managed(details):
            self._evict(sandbox_id)
            return None

        running = _state(details) == "running"
        instance = self.registry.get(sandbox_id)
        if instance is None:
            if running:
                return self._recover(sandbox_id, details)
            instance = _instance_from_details(sandbox_id, details, self._settings)
            instance.status = SandboxStatus.ERROR
            return instance

        if not running:
            instance.status = SandboxStatus.ERROR
        elif instance.status != SandboxStatus.BUSY:
            instance.status = SandboxStatus.READY
        return instance

    def get_instance(self, sandbox_id: str) -> SandboxInstance | None:
        instance = self.registry.get(sandbox_id)
        if instance is not None:
            return instance
        details = self._inspect(sandbox_id)
        if details is None or not _is_managed(details) or _state(details) != "running":
            return None
        return self._recover(sandbox_id, details)

    def purge_all(self) -> list[str]:
        """Force-remove every managed sandbox container, registered or not."""
        result = self._docker(
            ["ps", "-a", "--filter", f"label={LABEL_MANAGED}=true", "--format", "{{.Names}}"],
            timeout=CONTROL_TIMEOUT_SEC,
        )
        if not result.ok:
            raise SandboxError(f"Failed to list sandbox containers: {result.stderr_text.strip()}")
        names = [line.strip() for line in result.stdout_text.splitlines() if line.strip()]
        for name in names:
            self.destroy(name)
        if names:
            logger.info(f"Purged {len(names)} sandbox container(s)")
        return names

    def _require(self, sandbox_id: str) -> SandboxInstance:
        instance = self.get_instance(sandbox_id)
        if instance is None or instance.status == SandboxStatus.DESTROYED:
            raise SandboxNotFoundError(sandbox_id)
        self._ensure_running(sandbox_id)
        self.registry.touch(sandbox_id)
        return instance

    def _ensure_running(self, sandbox_id: str) -> None:
        details = self._inspect(sandbox_id)
        if details is None:
            self._evict(sandbox_id)
            raise SandboxNotFoundError(
                sandbox_id, reason=f'Sandbox "{sandbox_id}" no longer exists'
            )
        state = _state(details)
        if state == "running":
            return

        verb = _REMEDIATION.get(state, "restart")
        logger.warning(f"Sandbox {sandbox_id} is {state}; attempting docker {verb}")
        self._docker([verb, sandbox_id], timeout=CONTROL_TIMEOUT_SEC)
        details = self._inspect(sandbox_id)
        if details is not None and _state(details) == "running":
            logger.info(f"Sandbox {sandbox_id} recovered from {state}")
            self.registry.set_status(
                sandbox_id, SandboxStatus.READY, only_if=SandboxStatus.ERROR
            )
            return

        logger.error(f"Sandbox {sandbox_id} could not be restarted; removing it")
        self._docker(["rm", "-f", sandbox_id], timeout=CONTROL_TIMEOUT_SEC)
        self._evict(sandbox_id)
        raise SandboxNotFoundError(
            sandbox_id,
            reason=f'Sandbox "{sandbox_id}" stopped ({state}) and could not be restarted',
        )

    def _recover(self, sandbox_id: str, details: dict[str, Any]) -> SandboxInstance:
        instance = _instance_from_details(sandbox_id, details, self._settings)
        instance.status = SandboxStatus.READY
        if instance.port is not None:
            self._ports.reserve(instance.port)
        self.registry.put(instance)
        logger.info(f"Recovered sandbox {sandbox_id} from docker (port={instance.port})")
        return instance

    def _evict(self, sandbox_id: str) -> None:
        instance = self.registry.remove(sandbox_id)
        if instance is None:
            return
        self._ports.release(instance.port)
        instance.mark_destroyed()

    def _rollback(self, sandbox_id: str, port: int) -> None:
        try:
            self._docker(["rm", "-f", sandbox_id], timeout=CONTROL_TIMEOUT_SEC)
        except SandboxError as exc:
            logger.warning(f"Rollback of {sandbox_id} could not remove the container: {exc}")
        self.registry.remove(sandbox_id)
        self._ports.release(port)

    def _ensure_network(self) -> None:
        if self._network_ready:
            return
        name = self._settings.network_name
        with self._network_lock:
            if self._network_ready:
                return
            inspect = self._docker(["network", "inspect", name], timeout=CONTROL_TIMEOUT_SEC)
            if not inspect.ok:
                create = self._docker(["network", "create", name], timeout=CONTROL_TIMEOUT_SEC)
                if not create.ok and "already exists" not in create.stderr_text:
                    raise SandboxProvisioningError(
                        f"Failed to create Docker network {name}: {create.stderr_text.strip()}",
                        hint="check that the Docker daemon is running",
                    )
                logger.info(f"Created sandbox network {name}")
            self._network_ready = True

    def _probe_health(self, sandbox_id: str) -> None:
        probe = self._settings.health_probe
        if not probe:
            return
        result = self._exec(
            sandbox_id, ["sh", "-c", self._env_prefix + probe], timeout=CONTROL_TIMEOUT_SEC
        )
        if not result.ok:
            logger.warning(
                f"Health probe {probe!r} failed in {sandbox_id} "
                f"(exit {result.returncode}): {result.stderr_text.strip()}"
            )

    def _live_ports(self) -> set[int]:
        result = self._docker(
            ["ps", "-a", "--filter", f"label={LABEL_MANAGED}=true",
             "--format", f'{{{{.Label "{LABEL_PORT}"}}}}'],
            timeout=CONTROL_TIMEOUT_SEC,
        )
        if not result.ok:
            logger.warning(f"Could not list live sandbox ports: {result.stderr_text.strip()}")
            return set()
        ports = set()
        for line in result.stdout_text.splitlines():
            port = parse_int(line)
            if port is not None:
                ports.add(port)
        return ports

    def _image_for(self, template: str) -> str:
        image = self._settings.docker_images.get(template)
        if not image:
            known = ", ".join(sorted(self._settings.docker_images)) or "none"
            raise UnsupportedTemplateError(
                f"Unsupported sandbox template {template!r}",
                hint=f"configure SANDBOX_IMAGE_{template.upper()} or use one of: {known}",
            )
        return image

    def _inspect(self, sandbox_id: str) -> dict[str, Any] | None:
        result = self._docker(
            ["inspect", "--type", "container", sandbox_id], timeout=CONTROL_TIMEOUT_SEC
        )
        if not result.ok:
            return None
        try:
            data = json.loads(result.stdout_text)
        except ValueError:
            logger.warning(f"Unparseable docker inspect output for {sandbox_id}")
            return None
        if not isinstance(data, list) or not data:
            return None
        return data[0]

    def _mkdir_parent(self, sandbox_id: str, target: str) -> None:
        parent = posixpath.dirname(target)
        if not parent or parent == "/":
            return
        result = self._exec(sandbox_id, ["mkdir", "-p", parent])
        if not result.ok:
            raise SandboxOperationError(
                f"Failed to create {parent} in {sandbox_id}: {result.stderr_text.strip()}"
            )

    def _exec(
        self,
        sandbox_id: str,
        command: Sequence[str],
        *,
        input: bytes | None = None,
        timeout: float | None = None,
        interactive: bool = False,
        detach: bool = False,
    ) -> ProcessResult:
        argv = ["exec"]
        if interactive:
            argv.append("-i")
        if detach:
            argv.append("-d")
        argv.append(sandbox_id)
        argv.extend(command)
        return self._docker(
            argv, input=input, timeout=timeout or self._settings.command_timeout_sec
        )

    def _docker(
        self,
        args: Sequence[str],
        *,
        input: bytes | None = None,
        timeout: float | None = None,
    ) -> ProcessResult:
        return self._runner.run(
            [self._settings.docker_bin, *args], input=input, timeout=timeout
        )


def _state(details: dict[str, Any]) -> str:
    return str((details.get("State") or {}).get("Status", "unknown"))


def _labels(details: dict[str, Any]) -> dict[str, str]:
    return (details.get("Config") or {}).get("Labels") or {}


def _is_managed(details: dict[str, Any]) -> bool:
    return _labels(details).get(LABEL_MANAGED) == "true"


def _label_port(details: dict[str, Any]) -> int | None:
    return parse_int(_labels(details).get(LABEL_PORT, ""))


def _published_port(details: dict[str, Any], container_port: int) -> int | None:
    bindings = ((details.get("NetworkSettings") or {}).get("Ports") or {}).get(
        f"{container_port}/tcp"
    )
    if not bindings:
        return None
    return parse_int(str(bindings[0].get("HostPort", "")))


def _parse_docker_time(value: str | None) -> datetime:
    if not value:
        return utcnow()
    text = value.rstrip("Z")
    if "." in text:
        head, fraction = text.split(".", 1)
        digits = re.match(r"\d*", fraction).group(0)
        text = f"{head}.{digits[:6]}" if digits else head
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return utcnow()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _instance_from_details(
    sandbox_id: str, details: dict[str, Any], settings: Settings
) -> SandboxInstance:
    labels = _labels(details)
    created_at = _parse_docker_time(details.get("Created"))
    return SandboxInstance(
        id=sandbox_id,
        project_id=labels.get(LABEL_PROJECT, "recovered"),
        template=labels.get(LABEL_TEMPLATE),
        created_at=created_at,
        last_activity_at=max(created_at, utcnow()),
        port=_published_port(details, settings.dev_server_port) or _label_port(details),
        handle=details.get("Id"),
    )
