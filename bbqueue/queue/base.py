"""Queue interface (port) for bounded blocking queues."""

from __future__ import annotations

from collections.abc import Iterable, MutableSequence
from typing import Any, Protocol


class BoundedQueue(Protocol):
    """Port: a capacity-limited FIFO shared by many producers and consumers.

    Timeouts are in seconds. Dequeue operations return ``None`` when they
    time out.
    """

    name: str

    async def put(self, value: Any) -> None: ...

    async def offer(self, value: Any, timeout: float | None = None) -> bool: ...

    async def add_all(self, values: Iterable[Any]) -> bool: ...

    async def take(self) -> Any: ...

    async def poll(self, timeout: float | None = None) -> Any: ...

    async def drain_to(self, sink: MutableSequence[Any], max_elements: int | None = None) -> int: ...

    async def clear(self) -> None: ...

    async def try_set_capacity(self, capacity: int) -> bool: ...

    async def remaining_capacity(self) -> int: ...

    async def size(self) -> int: ...

    async def delete(self) -> bool: ...
