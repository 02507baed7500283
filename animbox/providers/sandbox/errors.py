"""Error taxonomy shared by every sandbox backend."""

from __future__ import annotations


class SandboxError(RuntimeError):
    """Base class for sandbox layer failures."""


class SandboxProvisioningError(SandboxError):
    def __init__(self, message: str, hint: str | None = None) -> None:
        self.hint = hint
        if hint:
            message = f"{message} ({hint})"
        super().__init__(message)


class PortExhaustedError(SandboxProvisioningError):
    pass


class UnsupportedTemplateError(SandboxProvisioningError):
    pass


class BackendUnavailableError(SandboxProvisioningError):
    pass


class SandboxNotFoundError(SandboxError):
    def __init__(self, sandbox_id: str, reason: str | None = None) -> None:
        self.sandbox_id = sandbox_id
        detail = reason or f'Sandbox "{sandbox_id}" not found'
        super().__init__(f"{detail}. Create a new sandbox.")


class InvalidSandboxPathError(SandboxError, ValueError):
    pass


class SandboxOperationError(SandboxError):
    pass
