"""Sandbox provider implementations and the process-wide provider factory."""

from __future__ import annotations

import threading
from typing import Any

from loguru import logger

from animbox.config import PROVIDERS, ConfigError, Settings, load_settings
from animbox.models.sandbox import SandboxInstance
from animbox.providers.sandbox.base import SandboxProvider
from animbox.providers.sandbox.e2b import E2BProvider
from animbox.providers.sandbox.errors import (
    BackendUnavailableError,
    InvalidSandboxPathError,
    PortExhaustedError,
    SandboxError,
    SandboxNotFoundError,
    SandboxOperationError,
    SandboxProvisioningError,
    UnsupportedTemplateError,
)
from animbox.providers.sandbox.local import LocalProvider
from animbox.providers.sandbox.reaper import IdleReaper
from animbox.providers.sandbox.registry import InstanceRegistry

_lock = threading.Lock()
_provider: SandboxProvider | None = None
_reaper: IdleReaper | None = None


def create_provider(
    name: str | None = None,
    settings: Settings | None = None,
    registry: InstanceRegistry | None = None,
    **kwargs: Any,
) -> SandboxProvider:
    """Build a provider without touching the process-wide singleton."""
    settings = settings or load_settings()
    name = (name or settings.provider).strip().lower()
    if name == "docker":
        return LocalProvider(settings=settings, registry=registry, **kwargs)
    if name == "e2b":
        return E2BProvider(settings=settings, registry=registry, **kwargs)
    raise ConfigError(
        f"Unknown sandbox provider {name!r}; expected one of {', '.join(PROVIDERS)}"
    )


def get_sandbox_provider(settings: Settings | None = None) -> SandboxProvider:
    global _provider, _reaper
    with _lock:
        if _provider is None:
            settings = settings or load_settings()
            _provider = create_provider(settings=settings)
            logger.info(f"Using sandbox provider: {_provider.name}")
            if settings.reaper_enabled:
                _reaper = IdleReaper(
                    _provider, settings.idle_timeout_sec, settings.sweep_interval_sec
                )
                _reaper.start()
        return _provider


def get_idle_reaper() -> IdleReaper | None:
    return _reaper


def reset_sandbox_provider() -> None:
    global _provider, _reaper
    with _lock:
        if _reaper is not None:
            _reaper.stop()
        _provider = None
        _reaper = None


def get_sandbox_instance(sandbox_id: str) -> SandboxInstance | None:
    return get_sandbox_provider().get_instance(sandbox_id)


def read_sandbox_file_raw(sandbox_id: str, path: str) -> bytes:
    return get_sandbox_provider().read_file_raw(sandbox_id, path)


__all__ = [
    "BackendUnavailableError",
    "E2BProvider",
    "IdleReaper",
    "InstanceRegistry",
    "InvalidSandboxPathError",
    "LocalProvider",
    "PortExhaustedError",
    "SandboxError",
    "SandboxNotFoundError",
    "SandboxOperationError",
    "SandboxProvider",
    "SandboxProvisioningError",
    "UnsupportedTemplateError",
    "create_provider",
    "get_idle_reaper",
    "get_sandbox_instance",
    "get_sandbox_provider",
    "read_sandbox_file_raw",
    "reset_sandbox_provider",
]
