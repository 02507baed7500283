"""Host port pool for sandbox dev servers."""

from __future__ import annotations

import threading
from typing import Iterable

from animbox.providers.sandbox.errors import PortExhaustedError


class PortPool:
    def __init__(self, start: int, end: int) -> None:
        if start > end:
            raise ValueError(f"Invalid port range {start}-{end}")
        self._start = start
        self._end = end
        self._reserved: set[int] = set()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._end - self._start + 1

    @property
    def in_use(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._reserved)

    def allocate(self, exclude: Iterable[int] = ()) -> int:
        """Reserve the lowest free port.

        ``exclude`` holds ports the backend reports as bound by live units, so
        ports held by containers from a previous process are never reused.
        """
        live = set(exclude)
        with self._lock:
            for port in range(self._start, self._end + 1):
                if port not in self._reserved and port not in live:
                    self._reserved.add(port)
                    return port
        raise PortExhaustedError(
            f"No available ports in range {self._start}-{self._end}",
            hint="destroy idle sandboxes or widen SANDBOX_PORT_RANGE_START/END",
        )

    def reserve(self, port: int) -> None:
        with self._lock:
            self._reserved.add(port)

    def release(self, port: int | None) -> None:
        if port is None:
            return
        with self._lock:
            self._reserved.discard(port)

    def __contains__(self, port: object) -> bool:
        with self._lock:
            return port in self._reserved
