"""Background sweep that destroys sandboxes left idle too long."""

from __future__ import annotations

from datetime import datetime, timedelta
import threading
from typing import Callable

from loguru import logger

from animbox.models.sandbox import SandboxStatus, utcnow
from animbox.providers.sandbox.base import SandboxProvider


class IdleReaper:
    def __init__(
        self,
        provider: SandboxProvider,
        idle_timeout_sec: float,
        interval_sec: float,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._provider = provider
        self._idle_timeout = timedelta(seconds=idle_timeout_sec)
        self._interval = interval_sec
        self._clock = clock
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep(self) -> list[str]:
        """Destroy every idle, non-busy sandbox and return the reaped ids.

        Works on a copy of the registry, so sandboxes created during the sweep
        are left for the next one.
        """
        now = self._clock()
        reaped: list[str] = []
        for instance in self._provider.registry.list():
            if instance.status in (SandboxStatus.BUSY, SandboxStatus.DESTROYED):
                continue
            idle = now - instance.last_activity_at
            if idle <= self._idle_timeout:
                continue
            try:
                self._provider.destroy(instance.id)
            except Exception:
                logger.exception(f"Failed to reap idle sandbox {instance.id}")
                continue
            logger.info(
                f"Reaped sandbox {instance.id} after {int(idle.total_seconds())}s idle"
            )
            reaped.append(instance.id)
        return reaped

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._loop, name="animbox-idle-reaper", daemon=True
            )
            self._thread.start()
        logger.debug(
            f"Idle reaper started (timeout={self._idle_timeout.total_seconds()}s, "
            f"interval={self._interval}s)"
        )

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop.set()
        if thread is not None:
            thread.join(timeout)

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Idle sweep failed")
