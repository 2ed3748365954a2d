"""Queue gateway. Opens named bounded queues and runs operations on them.

This is the logic behind the HTTP API. It depends on the BoundedQueue port;
the only concrete class it knows is the one it builds queues with.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

from bbqueue.errors import InvalidArgument, RemoteExecutionFailure, remote_errors
from bbqueue.queue.bounded import BoundedBlockingQueue
from bbqueue.queue.codec import get_codec
from bbqueue.queue.scripts import QueueScripts

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from bbqueue.config import QueueConfig
    from bbqueue.core.stats import GatewayStats
    from bbqueue.queue.base import BoundedQueue

log = structlog.get_logger()


class QueueGateway:
    """Registry of bounded queues sharing one Redis client."""

    def __init__(self, client: Redis, stats: GatewayStats, config: QueueConfig) -> None:
        self._client = client
        self._stats = stats
        self._config = config
        self._codec = get_codec(config.codec)
        self._scripts = QueueScripts(client)
        # Queue names come from request paths, so only a bounded number of
        # recently used handles are kept.
        self._queues: OrderedDict[str, BoundedQueue] = OrderedDict()

    @contextmanager
    def _remote(self, operation: str, name: str) -> Iterator[None]:
        try:
            yield
        except RemoteExecutionFailure:
            log.error("queue_operation_failed", operation=operation, queue=name, exc_info=True)
            self._stats.record_remote_error()
            raise

    async def open_queue(self, name: str) -> BoundedQueue:
        """Return the queue called ``name``, initializing its capacity on first use
        when a default capacity is configured."""
        queue = self._queues.get(name)
        if queue is not None:
            self._queues.move_to_end(name)
            return queue

        queue = BoundedBlockingQueue(
            self._client,
            name,
            self._codec,
            abort_attempts=self._config.abort_attempts,
            abort_grace=self._config.abort_grace_seconds,
            scripts=self._scripts,
        )
        if self._config.default_capacity > 0:
            with self._remote("open", name):
                await queue.try_set_capacity(self._config.default_capacity)
        self._queues[name] = queue
        while len(self._queues) > self._config.max_open_queues:
            evicted, _ = self._queues.popitem(last=False)
            log.debug("queue_evicted", queue=evicted)
        log.debug("queue_opened", queue=name)
        return queue

    def _check_timeout(self, timeout: float | None) -> None:
        if timeout is None:
            return
        if timeout <= 0 or timeout > self._config.max_poll_timeout:
            raise InvalidArgument(
                f"timeout must be in (0, {self._config.max_poll_timeout}], got {timeout}"
            )

    async def offer(self, name: str, value: Any, timeout: float | None = None) -> bool:
        self._check_timeout(timeout)
        queue = await self.open_queue(name)
        with self._remote("offer", name):
            accepted = await queue.offer(value, timeout)
        self._stats.record_offer(name, accepted)
        return accepted

    async def poll(self, name: str, timeout: float | None = None) -> Any:
        """Poll one element. ``None`` means the queue stayed empty."""
        self._check_timeout(timeout)
        queue = await self.open_queue(name)
        with self._remote("poll", name):
            value = await queue.poll(timeout)
        self._stats.record_poll(name, value is not None)
        return value

    async def drain(self, name: str, max_elements: int | None = None) -> list[Any]:
        queue = await self.open_queue(name)
        values: list[Any] = []
        with self._remote("drain", name):
            await queue.drain_to(values, max_elements)
        self._stats.record_drain(name, len(values))
        if values:
            log.info("queue_drained", queue=name, count=len(values))
        return values

    async def clear(self, name: str) -> None:
        queue = await self.open_queue(name)
        with self._remote("clear", name):
            await queue.clear()
        self._stats.record_clear(name)

    async def set_capacity(self, name: str, capacity: int) -> bool:
        queue = await self.open_queue(name)
        with self._remote("set_capacity", name):
            return await queue.try_set_capacity(capacity)

    async def describe(self, name: str) -> dict:
        queue = await self.open_queue(name)
        with self._remote("describe", name):
            size = await queue.size()
            remaining = await queue.remaining_capacity()
        return {"name": name, "size": size, "remaining_capacity": remaining}

    async def delete(self, name: str) -> bool:
        queue = await self.open_queue(name)
        with self._remote("delete", name):
            deleted = await queue.delete()
        self._queues.pop(name, None)
        return deleted

    async def ping(self) -> bool:
        with remote_errors("ping"):
            return bool(await self._client.ping())
