"""Host-wide registry of ports handed out to local chain nodes.

One :class:`PortAllocator` is shared by every session's process manager so
that two sessions can never be given the same port.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from ..config import ChainConfig
from ..errors import ResourceConflict
from ..utils import check_port_available

PortCheck = Callable[[int], Awaitable[bool]]


class PortAllocator:
    """Allocates ports from a fixed range under a single lock.

    Args:
        start: First port of the range (inclusive).
        end: Last port of the range (inclusive).
        is_free: Coroutine returning ``True`` when nothing listens on the port.
    """

    def __init__(
        self,
        start: int,
        end: int,
        is_free: PortCheck = check_port_available,
    ) -> None:
        if end < start:
            raise ValueError(f"Invalid port range {start}-{end}")
        self.start = start
        self.end = end
        self._is_free = is_free
        self._allocated: set[int] = set()
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: ChainConfig) -> "PortAllocator":
        return cls(config.port_range_start, config.port_range_end)

    @property
    def allocated(self) -> frozenset[int]:
        return frozenset(self._allocated)

    async def allocate(self, port: int | None = None) -> int:
        """Reserve *port*, or the next free port in the range.

        Raises:
            ResourceConflict: If the requested port is already allocated or
                in use, or the range is exhausted.
        """
        async with self._lock:
            if port is not None:
                if port in self._allocated or not await self._is_free(port):
                    raise ResourceConflict(f"Port {port} is already in use")
                self._allocated.add(port)
                return port

            for candidate in range(self.start, self.end + 1):
                if candidate in self._allocated:
                    continue
                if await self._is_free(candidate):
                    self._allocated.add(candidate)
                    return candidate

        raise ResourceConflict(f"No free port in range {self.start}-{self.end}")

    def release(self, port: int) -> None:
        self._allocated.discard(port)
