"""Process execution port used by the local container backend."""

from __future__ import annotations

from dataclasses import dataclass
import subprocess
from typing import Protocol, Sequence

from animbox.providers.sandbox.errors import BackendUnavailableError

TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: bytes
    stderr: bytes
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


class ProcessRunner(Protocol):
    def run(
        self,
        argv: Sequence[str],
        *,
        input: bytes | None = None,
        timeout: float | None = None,
    ) -> ProcessResult:
        ...


class SubprocessRunner(ProcessRunner):
    def run(
        self,
        argv: Sequence[str],
        *,
        input: bytes | None = None,
        timeout: float | None = None,
    ) -> ProcessResult:
        command = list(argv)
        try:
            process = subprocess.run(
                command,
                input=input,
                capture_output=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            stderr = exc.stderr or b""
            stderr += f"\nCommand timed out after {timeout}s".encode("utf-8")
            return ProcessResult(
                returncode=TIMEOUT_EXIT_CODE,
                stdout=exc.stdout or b"",
                stderr=stderr,
                timed_out=True,
            )
        except FileNotFoundError as exc:
            raise BackendUnavailableError(
                f"Executable not found: {command[0]}",
                hint="install it or fix PATH",
            ) from exc
        return ProcessResult(
            returncode=process.returncode,
            stdout=process.stdout,
            stderr=process.stderr,
        )
