"""In-memory registry of live sandbox instances.

The registry is a cache of backend state, not the source of truth: it is lost
on restart and each backend knows how to rebuild entries from the units that
are still running.
"""

from __future__ import annotations

import threading
from datetime import datetime

from animbox.models.sandbox import SandboxInstance, SandboxStatus


class InstanceRegistry:
    def __init__(self) -> None:
        self._instances: dict[str, SandboxInstance] = {}
        self._lock = threading.Lock()

    def get(self, sandbox_id: str) -> SandboxInstance | None:
        with self._lock:
            return self._instances.get(sandbox_id)

    def put(self, instance: SandboxInstance) -> None:
        with self._lock:
            self._instances[instance.id] = instance

    def remove(self, sandbox_id: str) -> SandboxInstance | None:
        with self._lock:
            return self._instances.pop(sandbox_id, None)

    def touch(self, sandbox_id: str, now: datetime | None = None) -> None:
        with self._lock:
            instance = self._instances.get(sandbox_id)
            if instance is not None:
                instance.touch(now)

    def set_status(
        self,
        sandbox_id: str,
        status: SandboxStatus,
        only_if: SandboxStatus | None = None,
    ) -> None:
        with self._lock:
            instance = self._instances.get(sandbox_id)
            if instance is None:
                return
            if only_if is not None and instance.status != only_if:
                return
            instance.status = status

    def list(self) -> list[SandboxInstance]:
        with self._lock:
            return list(self._instances.values())

    def clear(self) -> None:
        with self._lock:
            self._instances.clear()

    def __contains__(self, sandbox_id: object) -> bool:
        with self._lock:
            return sandbox_id in self._instances

    def __len__(self) -> int:
        with self._lock:
            return len(self._instances)
