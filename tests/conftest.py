"""Shared fixtures: an in-memory docker CLI and an in-memory E2B SDK."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import enum
import io
import json
import os
import posixpath
import shlex
import tarfile
from types import SimpleNamespace
from typing import Any, Sequence
import uuid

import pytest

from animbox.config import Settings
from animbox.providers.sandbox import reset_sandbox_provider
from animbox.providers.sandbox.e2b import E2BProvider
from animbox.providers.sandbox.local import LocalProvider
from animbox.providers.sandbox.process import ProcessResult
from animbox.providers.sandbox.registry import InstanceRegistry

WRITE_STDIN_SCRIPT = 'cat > "$1"'


def _ok(stdout: bytes | str = b"") -> ProcessResult:
    if isinstance(stdout, str):
        stdout = stdout.encode("utf-8")
    return ProcessResult(returncode=0, stdout=stdout, stderr=b"")


def _fail(code: int, stderr: str) -> ProcessResult:
    return ProcessResult(returncode=code, stdout=b"", stderr=stderr.encode("utf-8"))


def _strip_env_prefix(script: str) -> str:
    parts = script.split(" && ")
    while len(parts) > 1 and parts[0].startswith("export "):
        parts.pop(0)
    return " && ".join(parts)


class FakeFilesystem:
    """A tiny POSIX-ish filesystem plus the commands the providers issue."""

    def __init__(self, workdir: str = "/app") -> None:
        self.workdir = workdir
        self.files: dict[str, bytes] = {}
        self.dirs: set[str] = {"/"}
        self.downloads: dict[str, bytes] = {}
        self.health_ok = True
        self.commands: list[str] = []
        self.scripts: list[str] = []
        self.mkdir("/tmp")
        self.mkdir(workdir)
        self.write(f"{workdir}/package.json", b'{"name": "template"}')
        self.write(f"{workdir}/src/index.ts", b"export {};\n")

    def mkdir(self, path: str) -> None:
        path = posixpath.normpath(path)
        while path not in self.dirs:
            self.dirs.add(path)
            path = posixpath.dirname(path)

    def write(self, path: str, data: bytes) -> None:
        self.mkdir(posixpath.dirname(path))
        self.files[path] = data

    def parent_exists(self, path: str) -> bool:
        return posixpath.dirname(path) in self.dirs

    def children(self, root: str, recursive: bool) -> list[tuple[str, str, int]]:
        root = posixpath.normpath(root)
        prefix = root.rstrip("/") + "/"
        entries = []
        for path in sorted(self.dirs):
            if path.startswith(prefix) and (recursive or posixpath.dirname(path) == root):
                entries.append(("d", path, 4096))
        for path, data in sorted(self.files.items()):
            if path.startswith(prefix) and (recursive or posixpath.dirname(path) == root):
                entries.append(("f", path, len(data)))
        return entries

    def shell(self, script: str, timeout: float | None) -> ProcessResult:
        self.scripts.append(script)
        command = _strip_env_prefix(script)
        self.commands.append(command)
        argv = shlex.split(command)
        if not argv:
            return _ok()
        name = argv[0]
        if name == "bun" and argv[1:] == ["--version"]:
            return _ok("1.1.30\n") if self.health_ok else _fail(127, "sh: bun: not found")
        if name == "echo":
            return _ok(" ".join(argv[1:]) + "\n")
        if name == "exit":
            return _fail(int(argv[1]), "")
        if name == "sleep":
            if timeout is not None and float(argv[1]) > timeout:
                return ProcessResult(
                    returncode=124, stdout=b"", stderr=b"timed out", timed_out=True
                )
            return _ok()
        if name == "ls":
            arg = next((a for a in argv[1:] if not a.startswith("-")), ".")
            target = posixpath.normpath(posixpath.join(self.workdir, arg))
            if target in self.files:
                return _ok(posixpath.basename(target) + "\n")
            if target not in self.dirs:
                return _fail(2, f"ls: cannot access '{arg}': No such file or directory")
            names = [posixpath.basename(p) for _, p, _ in self.children(target, False)]
            return _ok("".join(f"{n}\n" for n in sorted(names)))
        return self.execute(argv, None)

    def execute(self, argv: Sequence[str], stdin: bytes | None) -> ProcessResult:
        name, args = argv[0], list(argv[1:])
        if name == "mkdir":
            self.mkdir(args[-1])
            return _ok()
        if name == "cat":
            path = args[0]
            if path not in self.files:
                return _fail(1, f"cat: {path}: No such file or directory")
            return _ok(self.files[path])
        if name == "test":
            return _ok() if args[1] in self.files else _fail(1, "")
        if name == "rm":
            self.files.pop(args[-1], None)
            return _ok()
        if name == "stat":
            path = args[-1]
            if path not in self.files:
                return _fail(1, f"stat: cannot stat '{path}'")
            return _ok(f"{len(self.files[path])}\n")
        if name == "curl":
            target, url = args[args.index("-o") + 1], args[-1]
            if url not in self.downloads:
                return _fail(22, "curl: (22) The requested URL returned error: 404")
            if not self.parent_exists(target):
                return _fail(23, "curl: (23) Failure writing output to destination")
            self.files[target] = self.downloads[url]
            return _ok()
        if name == "find":
            recursive = "-maxdepth" not in args
            root = args[0]
            if root not in self.dirs:
                return _fail(1, f"find: '{root}': No such file or directory")
            lines = [f"{kind}\t{size}\t{path}\n" for kind, path, size in self.children(root, recursive)]
            return _ok("".join(lines))
        if name == "tar":
            return self._tar(args)
        return _fail(127, f"sh: {name}: not found")

    def _tar(self, args: list[str]) -> ProcessResult:
        mode, archive = args[0], args[1]
        root = args[args.index("-C") + 1]
        if mode == "czf":
            paths = [a for a in args[args.index("-C") + 2:] if not a.startswith("--")]
            buffer = io.BytesIO()
            missing = []
            with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
                for rel in paths:
                    full = posixpath.join(root, rel)
                    if full not in self.dirs and full not in self.files:
                        missing.append(rel)
                        continue
                    entries = [("d" if full in self.dirs else "f", full, 0)]
                    if full in self.dirs:
                        entries += self.children(full, True)
                    for kind, path, _ in entries:
                        info = tarfile.TarInfo(posixpath.relpath(path, root))
                        if kind == "d":
                            info.type = tarfile.DIRTYPE
                            tar.addfile(info)
                        else:
                            data = self.files[path]
                            info.size = len(data)
                            tar.addfile(info, io.BytesIO(data))
            self.files[archive] = buffer.getvalue()
            if missing:
                return _fail(2, "".join(f"tar: {m}: Cannot stat: No such file or directory\n" for m in missing))
            return _ok()
        if mode == "xzf":
            if archive not in self.files:
                return _fail(2, f"tar: {archive}: Cannot open")
            try:
                with tarfile.open(fileobj=io.BytesIO(self.files[archive]), mode="r:gz") as tar:
                    for member in tar.getmembers():
                        dest = posixpath.normpath(posixpath.join(root, member.name))
                        if member.isdir():
                            self.mkdir(dest)
                        else:
                            self.write(dest, tar.extractfile(member).read())
            except tarfile.TarError as exc:
                return _fail(2, f"tar: {exc}")
            return _ok()
        return _fail(2, f"tar: unsupported mode {mode}")


@dataclass
class FakeContainer:
    name: str
    labels: dict[str, str]
    port: int | None
    image: str = "animbox/remotion-sandbox"
    status: str = "running"
    run_args: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid.uuid4().hex * 2)
    fs: FakeFilesystem = field(default_factory=FakeFilesystem)


class FakeDocker:
    """Stands in for the docker CLI behind the ProcessRunner port."""

    def __init__(self) -> None:
        self.containers: dict[str, FakeContainer] = {}
        self.networks: set[str] = set()
        self.calls: list[list[str]] = []
        self.timeouts: list[float | None] = []
        self.run_error: str | None = None
        self.restart_works = True
        self.health_ok = True
        self.on_run = None

    def spawn(
        self,
        name: str,
        project_id: str = "proj",
        template: str = "remotion",
        port: int | None = 15173,
        status: str = "running",
        managed: bool = True,
    ) -> FakeContainer:
        labels = {"animbox.project": project_id, "animbox.template": template}
        if managed:
            labels["animbox.managed"] = "true"
        if port is not None:
            labels["animbox.port"] = str(port)
        container = FakeContainer(name=name, labels=labels, port=port, status=status)
        self.containers[name] = container
        return container

    def commands_for(self, name: str) -> list[str]:
        return self.containers[name].fs.commands

    def subcommands(self) -> list[str]:
        return [call[1] for call in self.calls]

    def run(
        self,
        argv: Sequence[str],
        *,
        input: bytes | None = None,
        timeout: float | None = None,
    ) -> ProcessResult:
        argv = list(argv)
        self.calls.append(argv)
        self.timeouts.append(timeout)
        verb, args = argv[1], argv[2:]
        handler = getattr(self, f"_{verb}", None)
        if handler is None:
            return _fail(125, f"docker: '{verb}' is not a docker command")
        return handler(args, input, timeout)

    def _network(self, args, stdin, timeout):
        action, name = args
        if action == "inspect":
            return _ok("[]") if name in self.networks else _fail(1, f"network {name} not found")
        self.networks.add(name)
        return _ok(name + "\n")

    def _ps(self, args, stdin, timeout):
        fmt = args[args.index("--format") + 1]
        managed = [c for c in self.containers.values() if c.labels.get("animbox.managed") == "true"]
        if fmt == "{{.Names}}":
            lines = [c.name for c in managed]
        else:
            lines = [c.labels.get("animbox.port", "") for c in managed]
        return _ok("".join(f"{line}\n" for line in lines))

    def _run(self, args, stdin, timeout):
        if self.run_error:
            return _fail(125, self.run_error)
        labels: dict[str, str] = {}
        name = port = None
        i = 0
        while i < len(args):
            arg = args[i]
            if arg == "-d":
                i += 1
                continue
            if arg.startswith("-"):
                value = args[i + 1]
                if arg == "--name":
                    name = value
                elif arg == "--label":
                    key, _, val = value.partition("=")
                    labels[key] = val
                elif arg == "-p":
                    port = int(value.split(":")[0])
                i += 2
                continue
            break
        if self.on_run is not None:
            self.on_run(name)
        image = args[i]
        container = FakeContainer(name=name, labels=labels, port=port, image=image, run_args=list(args))
        container.fs.health_ok = self.health_ok
        self.containers[name] = container
        return _ok(container.id + "\n")

    def _inspect(self, args, stdin, timeout):
        name = args[-1]
        container = self.containers.get(name)
        if container is None:
            return _fail(1, f"Error: No such container: {name}")
        ports = {}
        if container.port is not None:
            ports["5173/tcp"] = [{"HostIp": "0.0.0.0", "HostPort": str(container.port)}]
        details = {
            "Id": container.id,
            "Name": f"/{name}",
            "Created": "2026-10-18T12:00:00.123456789Z",
            "State": {"Status": container.status, "Running": container.status == "running"},
            "Config": {"Labels": container.labels, "Image": container.image},
            "NetworkSettings": {"Ports": ports},
        }
        return _ok(json.dumps([details]))

    def _remediate(self, args):
        container = self.containers.get(args[-1])
        if container is None:
            return _fail(1, f"Error: No such container: {args[-1]}")
        if self.restart_works:
            container.status = "running"
            return _ok(args[-1] + "\n")
        return _fail(1, "Error response from daemon: cannot start container")

    def _start(self, args, stdin, timeout):
        return self._remediate(args)

    def _restart(self, args, stdin, timeout):
        return self._remediate(args)

    def _unpause(self, args, stdin, timeout):
        return self._remediate(args)

    def _rm(self, args, stdin, timeout):
        name = args[-1]
        if self.containers.pop(name, None) is None:
            return _fail(1, f"Error: No such container: {name}")
        return _ok(name + "\n")

    def _exec(self, args, stdin, timeout):
        detach = False
        while args and args[0].startswith("-"):
            detach = detach or args[0] == "-d"
            args = args[1:]
        name, command = args[0], args[1:]
        container = self.containers.get(name)
        if container is None:
            return _fail(1, f"Error: No such container: {name}")
        if container.status != "running":
            return _fail(1, f"Error response from daemon: container {name} is not running")
        fs = container.fs
        if command[:2] == ["sh", "-c"]:
            script = command[2]
            if script == WRITE_STDIN_SCRIPT:
                target = command[4]
                if not fs.parent_exists(target):
                    return _fail(1, f"sh: can't create {target}: nonexistent directory")
                fs.files[target] = stdin or b""
                return _ok()
            if detach:
                fs.scripts.append(script)
                fs.commands.append(_strip_env_prefix(script))
                return _ok()
            return fs.shell(script, timeout)
        return fs.execute(command, stdin)


class FakeCommandExitException(Exception):
    def __init__(self, stdout: str, stderr: str, exit_code: int) -> None:
        super().__init__(f"Command exited with code {exit_code}: {stderr}")
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code


class FakeTimeoutException(Exception):
    pass


class FakeNotFoundException(Exception):
    pass


class FakeFileType(enum.Enum):
    FILE = "file"
    DIR = "dir"


class FakeSandboxState(enum.Enum):
    RUNNING = "running"
    PAUSED = "paused"


@dataclass
class FakeSandboxQuery:
    metadata: dict[str, str] | None = None
    state: list[Any] | None = None


class FakeE2BCloud:
    def __init__(self) -> None:
        self.sandboxes: dict[str, "FakeE2BSandbox"] = {}
        self.created: list[dict[str, Any]] = []
        self.create_error: Exception | None = None
        self.list_error: Exception | None = None
        self.health_ok = True
        self.on_create = None


class FakeE2BSandbox:
    def __init__(self, cloud: FakeE2BCloud, template: str, metadata: dict[str, str]) -> None:
        self.cloud = cloud
        self.sandbox_id = f"sbx{uuid.uuid4().hex[:10]}"
        self.template = template
        self.metadata = dict(metadata)
        self.started_at = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
        self.alive = True
        self.killed = False
        self.fs = FakeFilesystem()
        self.fs.health_ok = cloud.health_ok
        self.files = SimpleNamespace(write=self._write, read=self._read, list=self._list)
        self.commands = SimpleNamespace(run=self._run)
        self.cwds: list[str | None] = []

    def get_host(self, port: int) -> str:
        return f"{port}-{self.sandbox_id}.e2b.app"

    def is_running(self) -> bool:
        return self.alive

    def kill(self) -> None:
        self.alive = False
        self.killed = True
        self.cloud.sandboxes.pop(self.sandbox_id, None)

    def _check_alive(self) -> None:
        if not self.alive:
            raise FakeNotFoundException(f"Sandbox {self.sandbox_id} not found")

    def _write(self, path: str, data: str | bytes) -> None:
        self._check_alive()
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.fs.write(path, data)

    def _read(self, path: str, format: str = "text") -> str | bytes:
        self._check_alive()
        if path not in self.fs.files:
            raise FakeNotFoundException(f"File {path} not found")
        data = self.fs.files[path]
        return data if format == "bytes" else data.decode("utf-8")

    def _list(self, path: str) -> list[SimpleNamespace]:
        self._check_alive()
        if path not in self.fs.dirs:
            raise FakeNotFoundException(f"Path {path} not found")
        return [
            SimpleNamespace(
                name=posixpath.basename(entry),
                path=entry,
                type=FakeFileType.DIR if kind == "d" else FakeFileType.FILE,
                size=0 if kind == "d" else size,
            )
            for kind, entry, size in self.fs.children(path, False)
        ]

    def _run(
        self,
        cmd: str,
        timeout: float | None = 60,
        background: bool = False,
        cwd: str | None = None,
    ):
        self._check_alive()
        self.cwds.append(cwd)
        if background:
            self.fs.scripts.append(cmd)
            self.fs.commands.append(_strip_env_prefix(cmd))
            return SimpleNamespace(pid=42)
        result = self.fs.shell(cmd, timeout)
        if result.timed_out:
            raise FakeTimeoutException(f"Command timed out after {timeout}s")
        if result.returncode != 0:
            raise FakeCommandExitException(result.stdout_text, result.stderr_text, result.returncode)
        return SimpleNamespace(
            stdout=result.stdout_text, stderr=result.stderr_text, exit_code=0, error=None
        )


def make_fake_e2b(cloud: FakeE2BCloud) -> SimpleNamespace:
    class Sandbox:
        @staticmethod
        def create(template: str, timeout: int, metadata: dict[str, str], api_key: str | None = None):
            cloud.created.append({"template": template, "timeout": timeout, "metadata": metadata, "api_key": api_key})
            if cloud.create_error is not None:
                raise cloud.create_error
            if cloud.on_create is not None:
                cloud.on_create(metadata["sandbox_id"])
            sandbox = FakeE2BSandbox(cloud, template, metadata)
            cloud.sandboxes[sandbox.sandbox_id] = sandbox
            return sandbox

        @staticmethod
        def list(query: FakeSandboxQuery, api_key: str | None = None):
            if cloud.list_error is not None:
                raise cloud.list_error
            wanted = query.metadata or {}
            items = [
                SimpleNamespace(
                    sandbox_id=sbx.sandbox_id,
                    metadata=dict(sbx.metadata),
                    started_at=sbx.started_at,
                    template_id=sbx.template,
                )
                for sbx in cloud.sandboxes.values()
                if sbx.alive and all(sbx.metadata.get(k) == v for k, v in wanted.items())
            ]
            return SimpleNamespace(next_items=lambda: items)

        @staticmethod
        def connect(sandbox_id: str, api_key: str | None = None):
            if sandbox_id not in cloud.sandboxes:
                raise FakeNotFoundException(f"Sandbox {sandbox_id} not found")
            return cloud.sandboxes[sandbox_id]

    return SimpleNamespace(
        Sandbox=Sandbox,
        SandboxQuery=FakeSandboxQuery,
        SandboxState=FakeSandboxState,
        FileType=FakeFileType,
        CommandExitException=FakeCommandExitException,
        TimeoutException=FakeTimeoutException,
        NotFoundException=FakeNotFoundException,
    )


CONFIG_ENV_PREFIXES = ("SANDBOX_", "E2B_", "ANIMBOX_")
CONFIG_ENV_NAMES = {"SNAPSHOT_PATH", "LOG_LEVEL", "LOG_FILE"}


@pytest.fixture(autouse=True)
def _isolated_config_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith(CONFIG_ENV_PREFIXES) or name in CONFIG_ENV_NAMES:
            monkeypatch.delenv(name)


@pytest.fixture(autouse=True)
def _reset_singleton():
    reset_sandbox_provider()
    yield
    reset_sandbox_provider()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        port_range_start=15173,
        port_range_end=15175,
        snapshot_path=str(tmp_path / "snapshots"),
        e2b_templates={"remotion": "tmpl-remotion"},
        reaper_enabled=False,
    )


@pytest.fixture
def docker() -> FakeDocker:
    return FakeDocker()


@pytest.fixture
def local_provider(settings, docker) -> LocalProvider:
    return LocalProvider(settings=settings, registry=InstanceRegistry(), runner=docker)


@pytest.fixture
def cloud() -> FakeE2BCloud:
    return FakeE2BCloud()


@pytest.fixture
def e2b_sdk(cloud) -> SimpleNamespace:
    return make_fake_e2b(cloud)


@pytest.fixture
def e2b_provider(settings, e2b_sdk) -> E2BProvider:
    return E2BProvider(settings=settings, registry=InstanceRegistry(), sdk=e2b_sdk)
