"""Cloud sandbox provider backed by the E2B SDK.

The ``e2b`` module is imported on first use so the docker backend works on
hosts without it; tests pass a stand-in module through ``sdk``.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import importlib
import posixpath
import time
from types import ModuleType
from typing import Any, Iterator, Sequence

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
    BackendUnavailableError,
    InvalidSandboxPathError,
    SandboxError,
    SandboxNotFoundError,
    SandboxOperationError,
    SandboxProvisioningError,
    UnsupportedTemplateError,
)
from animbox.providers.sandbox.process import TIMEOUT_EXIT_CODE
from animbox.providers.sandbox.registry import InstanceRegistry
from animbox.providers.sandbox.safety import (
    build_env_prefix,
    relative_to_workdir,
    resolve_sandbox_path,
    shell_command,
    validate_media_url,
    validate_snapshot_archive,
)

PROBE_TIMEOUT_SEC = 15.0


class E2BProvider(SandboxProvider):
    name = "e2b"

    def __init__(
        self,
        settings: Settings | None = None,
        registry: InstanceRegistry | None = None,
        sdk: ModuleType | Any | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self.registry = registry if registry is not None else InstanceRegistry()
        self._sdk = sdk
        self._env_prefix = build_env_prefix(
            self._settings.path_prefix, self._settings.command_env
        )

    @property
    def sdk(self) -> Any:
        if self._sdk is None:
            try:
                self._sdk = importlib.import_module("e2b")
            except ImportError as exc:
                raise BackendUnavailableError(
                    "The e2b package is not installed",
                    hint="install e2b or set SANDBOX_PROVIDER=docker",
                ) from exc
        return self._sdk

    def create(self, project_id: str, template: str | None = None) -> SandboxInstance:
        settings = self._settings
        template = template or settings.default_template
        template_id = settings.e2b_templates.get(template)
        if not template_id:
            raise UnsupportedTemplateError(
                f"No E2B template configured for {template!r}",
                hint=f"set E2B_TEMPLATE_ID_{template.upper()} or use SANDBOX_PROVIDER=docker",
            )

        sandbox_id = new_sandbox_id(settings.container_prefix, project_id)
        instance = SandboxInstance(id=sandbox_id, project_id=project_id, template=template)
        self.registry.put(instance)

        sandbox = None
        try:
            sandbox = self.sdk.Sandbox.create(
                template=template_id,
                timeout=settings.e2b_sandbox_lifetime_sec,
                metadata={
                    "sandbox_id": sandbox_id,
                    "project_id": project_id,
                    "template": template,
                },
                **self._api_kwargs(),
            )
            instance.handle = sandbox
            instance.proxy_base_url = f"https://{sandbox.get_host(settings.dev_server_port)}"
            self._probe_health(instance)
        except Exception as exc:
            self.registry.remove(sandbox_id)
            instance.status = SandboxStatus.ERROR
            instance.proxy_base_url = None
            if sandbox is not None:
                self._kill(sandbox, sandbox_id)
            if isinstance(exc, SandboxProvisioningError):
                raise
            raise SandboxProvisioningError(
                f"Failed to create E2B sandbox for {project_id}: {exc}",
                hint="check E2B_API_KEY and the configured template id",
            ) from exc

        instance.status = SandboxStatus.READY
        logger.info(
            f"Created E2B sandbox {sandbox_id} project={project_id} "
            f"template={template} url={instance.proxy_base_url}"
        )
        return instance

    def destroy(self, sandbox_id: str) -> None:
        instance = self.get_instance(sandbox_id)
        if instance is None:
            return
        self.registry.remove(sandbox_id)
        if instance.handle is not None:
            self._kill(instance.handle, sandbox_id)
        instance.mark_destroyed()
        logger.info(f"Destroyed E2B sandbox {sandbox_id}")

    def write_file(self, sandbox_id: str, path: str, content: str) -> None:
        target = resolve_sandbox_path(path, self._settings.workdir)
        instance = self._require(sandbox_id)
        with self._sdk_errors(instance, f"write {path}"):
            instance.handle.files.write(target, content)

    def read_file(self, sandbox_id: str, path: str) -> str:
        return self.read_file_raw(sandbox_id, path).decode("utf-8", errors="replace")

    def write_binary(self, sandbox_id: str, path: str, data: bytes) -> None:
        target = resolve_sandbox_path(path, self._settings.workdir)
        instance = self._require(sandbox_id)
        with self._sdk_errors(instance, f"write {path}"):
            instance.handle.files.write(target, data)

    def read_file_raw(self, sandbox_id: str, path: str) -> bytes:
        target = resolve_sandbox_path(path, self._settings.workdir)
        instance = self._require(sandbox_id)
        with self._sdk_errors(instance, f"read {path}"):
            data = instance.handle.files.read(target, format="bytes")
        return bytes(data)

    def list_files(
        self, sandbox_id: str, path: str = ".", recursive: bool = False
    ) -> list[SandboxFile]:
        workdir = self._settings.workdir
        target = resolve_sandbox_path(path, workdir)
        instance = self._require(sandbox_id)
        if recursive:
            result = self._shell(instance, find_argv(target, recursive=True))
            if not result.success and not result.stdout:
                raise SandboxOperationError(
                    f"Failed to list {path} in {sandbox_id}: {result.stderr.strip()}"
                )
            return parse_find_listing(result.stdout, workdir)

        with self._sdk_errors(instance, f"list {path}"):
            entries = instance.handle.files.list(target)
        dir_type = self.sdk.FileType.DIR
        files = []
        for entry in entries:
            is_dir = entry.type == dir_type
            files.append(
                SandboxFile(
                    path=relative_to_workdir(entry.path, workdir),
                    type="directory" if is_dir else "file",
                    size=None if is_dir else getattr(entry, "size", None),
                )
            )
        return files

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
        instance = self._require(sandbox_id)
        self.registry.set_status(sandbox_id, SandboxStatus.BUSY)
        start = time.monotonic()
        try:
            result = self._run(
                instance, self._env_prefix + command, timeout=timeout, background=background
            )
        finally:
            self.registry.set_status(
                sandbox_id, SandboxStatus.READY, only_if=SandboxStatus.BUSY
            )
        duration_ms = int((time.monotonic() - start) * 1000)
        if result.timed_out:
            logger.warning(f"Command timed out after {timeout}s in {sandbox_id}: {command[:100]}")
        return CommandResult(
            success=result.success,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            duration_ms=duration_ms,
            timed_out=result.timed_out,
        )

    def upload_media(
        self, sandbox_id: str, url: str, dest_path: str
    ) -> MediaUploadResult:
        target = resolve_sandbox_path(dest_path, self._settings.workdir)
        validate_media_url(url)
        instance = self._require(sandbox_id)
        self._shell(instance, ["mkdir", "-p", posixpath.dirname(target)])

        result = self._shell(
            instance,
            ["curl", "-fsSL", "-o", target, url],
            timeout=self._settings.media_timeout_sec,
        )
        if not result.success:
            return MediaUploadResult(
                success=False,
                path=dest_path,
                error=f"Failed to download media: {result.stderr.strip()}",
            )
        size_result = self._shell(instance, ["stat", "-c", "%s", target])
        size = parse_int(size_result.stdout) if size_result.success else None
        return MediaUploadResult(success=True, path=dest_path, size=size)

    def export_snapshot(
        self, sandbox_id: str, paths: Sequence[str] | None = None
    ) -> bytes:
        selected = snapshot_paths(paths)
        instance = self._require(sandbox_id)
        archive = temp_archive_path()
        timeout = self._settings.snapshot_timeout_sec
        try:
            tar = self._shell(
                instance,
                ["tar", "czf", archive, "-C", self._settings.workdir,
                 "--ignore-failed-read", *selected],
                timeout=timeout,
            )
            if not self._shell(instance, ["test", "-f", archive]).success:
                raise SandboxOperationError(
                    f"Snapshot archive was not created in {sandbox_id}: {tar.stderr.strip()}"
                )
            with self._sdk_errors(instance, "read snapshot archive"):
                data = bytes(instance.handle.files.read(archive, format="bytes"))
        finally:
            self._shell(instance, ["rm", "-f", archive])
        logger.info(f"Exported snapshot from {sandbox_id} ({len(data)} bytes)")
        return data

    def import_snapshot(self, sandbox_id: str, data: bytes) -> bool:
        instance = self._require(sandbox_id)
        try:
            file_count = validate_snapshot_archive(data)
        except InvalidSandboxPathError as exc:
            logger.warning(f"Rejected snapshot for {sandbox_id}: {exc}")
            return False

        archive = temp_archive_path()
        try:
            try:
                with self._sdk_errors(instance, "upload snapshot archive"):
                    instance.handle.files.write(archive, data)
            except SandboxOperationError as exc:
                logger.warning(str(exc))
                return False
            extract = self._shell(
                instance,
                ["tar", "xzf", archive, "-C", self._settings.workdir],
                timeout=self._settings.snapshot_timeout_sec,
            )
            if not extract.success:
                logger.warning(f"Snapshot extract in {sandbox_id} failed: {extract.stderr.strip()}")
                return False
        finally:
            self._shell(instance, ["rm", "-f", archive])
        logger.info(f"Imported snapshot into {sandbox_id} ({file_count} files)")
        return True

    def get_status(self, sandbox_id: str) -> SandboxInstance | None:
        instance = self.get_instance(sandbox_id)
        if instance is None:
            return None
        if instance.status == SandboxStatus.CREATING or instance.handle is None:
            return instance
        try:
            running = bool(instance.handle.is_running())
        except Exception as exc:
            logger.warning(f"Status check for E2B sandbox {sandbox_id} failed: {exc}")
            running = False
        if not running:
            self._evict(sandbox_id)
            return None
        if instance.status != SandboxStatus.BUSY:
            instance.status = SandboxStatus.READY
        return instance

    def get_instance(self, sandbox_id: str) -> SandboxInstance | None:
        instance = self.registry.get(sandbox_id)
        if instance is not None:
            return instance
        return self._reconnect(sandbox_id)

    def _require(self, sandbox_id: str) -> SandboxInstance:
        instance = self.get_instance(sandbox_id)
        if (
            instance is None
            or instance.handle is None
            or instance.status == SandboxStatus.DESTROYED
        ):
            raise SandboxNotFoundError(sandbox_id)
        self.registry.touch(sandbox_id)
        return instance

    def _reconnect(self, sandbox_id: str) -> SandboxInstance | None:
        """Find a running sandbox created by an earlier process and adopt it."""
        try:
            sdk = self.sdk
            query = sdk.SandboxQuery(
                metadata={"sandbox_id": sandbox_id},
                state=[sdk.SandboxState.RUNNING],
            )
            items = sdk.Sandbox.list(query=query, **self._api_kwargs()).next_items()
            if not items:
                return None
            info = items[0]
            sandbox = sdk.Sandbox.connect(info.sandbox_id, **self._api_kwargs())
            proxy_base_url = f"https://{sandbox.get_host(self._settings.dev_server_port)}"
        except Exception as exc:
            logger.warning(f"Could not reconnect to E2B sandbox {sandbox_id}: {exc}")
            return None

        metadata = info.metadata or {}
        started_at = _as_utc(getattr(info, "started_at", None))
        instance = SandboxInstance(
            id=sandbox_id,
            project_id=metadata.get("project_id", "recovered"),
            status=SandboxStatus.READY,
            template=metadata.get("template"),
            created_at=started_at,
            last_activity_at=max(started_at, utcnow()),
            proxy_base_url=proxy_base_url,
            handle=sandbox,
        )
        self.registry.put(instance)
        logger.info(f"Reconnected to E2B sandbox {sandbox_id} ({info.sandbox_id})")
        return instance

    @contextmanager
    def _sdk_errors(self, instance: SandboxInstance, action: str) -> Iterator[None]:
        sdk = self.sdk
        try:
            yield
        except (sdk.CommandExitException, sdk.TimeoutException, SandboxError):
            raise
        except sdk.NotFoundException as exc:
            if not self._is_alive(instance):
                self._evict(instance.id)
                raise SandboxNotFoundError(
                    instance.id, reason=f'Sandbox "{instance.id}" is no longer running'
                ) from exc
            raise SandboxOperationError(f"Failed to {action} in {instance.id}: {exc}") from exc
        except Exception as exc:
            raise SandboxOperationError(f"Failed to {action} in {instance.id}: {exc}") from exc

    def _run(
        self,
        instance: SandboxInstance,
        command: str,
        *,
        timeout: float,
        background: bool = False,
    ) -> CommandResult:
        sdk = self.sdk
        try:
            with self._sdk_errors(instance, "run command"):
                execution = instance.handle.commands.run(
                    command,
                    timeout=timeout,
                    background=background,
                    cwd=self._settings.workdir,
                )
        except sdk.CommandExitException as exc:
            return CommandResult(
                success=False,
                stdout=exc.stdout or "",
                stderr=exc.stderr or "",
                exit_code=exc.exit_code if exc.exit_code is not None else 1,
            )
        except sdk.TimeoutException:
            return CommandResult(
                success=False,
                stdout="",
                stderr=f"Command timed out after {timeout}s",
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
            )
        if background:
            return CommandResult(success=True, stdout="", stderr="", exit_code=0)
        exit_code = execution.exit_code if execution.exit_code is not None else 0
        return CommandResult(
            success=exit_code == 0,
            stdout=execution.stdout or "",
            stderr=execution.stderr or "",
            exit_code=exit_code,
        )

    def _shell(
        self,
        instance: SandboxInstance,
        argv: Sequence[str],
        timeout: float | None = None,
    ) -> CommandResult:
        return self._run(
            instance,
            shell_command(argv),
            timeout=timeout or self._settings.command_timeout_sec,
        )

    def _probe_health(self, instance: SandboxInstance) -> None:
        probe = self._settings.health_probe
        if not probe:
            return
        result = self._run(instance, self._env_prefix + probe, timeout=PROBE_TIMEOUT_SEC)
        if not result.success:
            logger.warning(
                f"Health probe {probe!r} failed in {instance.id} "
                f"(exit {result.exit_code}): {result.stderr.strip()}"
            )

    def _is_alive(self, instance: SandboxInstance) -> bool:
        try:
            return bool(instance.handle.is_running())
        except Exception:
            return False

    def _evict(self, sandbox_id: str) -> None:
        instance = self.registry.remove(sandbox_id)
        if instance is not None:
            instance.mark_destroyed()
            logger.info(f"Evicted E2B sandbox {sandbox_id}")

    def _kill(self, sandbox: Any, sandbox_id: str) -> None:
        try:
            sandbox.kill()
        except Exception as exc:
            logger.warning(f"Failed to kill E2B sandbox {sandbox_id}: {exc}")

    def _api_kwargs(self) -> dict[str, str]:
        if self._settings.e2b_api_key:
            return {"api_key": self._settings.e2b_api_key}
        return {}


def _as_utc(value: datetime | None) -> datetime:
    if value is None:
        return utcnow()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
