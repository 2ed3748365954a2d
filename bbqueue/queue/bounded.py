"""Redis-backed bounded blocking queue.

Capacity is tracked by a counter of free permits next to the list. Enqueue
operations take permits through ``PermitSemaphore`` (the push happens in the
same script as the decrement). Dequeue operations give one permit back per
element, either inside a Lua script or, for blocking pops, right after the
pop through ``BlockingPop``.

Capacity-gated operations raise ``CapacityNotSet`` until
``try_set_capacity`` has initialized the counter. Dequeue and removal
operations never create the counter.
"""

from __future__ import annotations

from collections.abc import Iterable, MutableSequence
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from bbqueue.errors import CapacityExceeded, InvalidArgument, remote_errors
from bbqueue.queue.blocking import BlockingPop, PopCommand
from bbqueue.queue.codec import Codec, JsonCodec
from bbqueue.queue.naming import QueueKeys
from bbqueue.queue.scripts import QueueScripts
from bbqueue.queue.semaphore import PermitRequest, PermitSemaphore

if TYPE_CHECKING:
    from redis.asyncio import Redis

log = structlog.get_logger()


def _key_name(key: bytes | str) -> str:
    return key.decode("utf-8") if isinstance(key, bytes) else key


def _check_timeout(timeout: float) -> None:
    if timeout < 0:
        raise InvalidArgument(f"timeout must be >= 0, got {timeout}")


class BoundedBlockingQueue:
    """Bounded FIFO stored in a Redis list, shared by any number of processes."""

    def __init__(
        self,
        client: Redis,
        name: str,
        codec: Codec | None = None,
        *,
        abort_attempts: int = 3,
        abort_grace: float = 0.05,
        scripts: QueueScripts | None = None,
    ) -> None:
        if not name:
            raise InvalidArgument("queue name is required")
        self.name = name
        self._client = client
        self._codec = codec if codec is not None else JsonCodec()
        self._keys = QueueKeys.for_queue(name)
        self._scripts = scripts if scripts is not None else QueueScripts(client)
        self._semaphore = self._semaphore_for(self._keys)
        self._abort_attempts = abort_attempts
        self._abort_grace = abort_grace

    @property
    def keys(self) -> QueueKeys:
        return self._keys

    def _semaphore_for(self, keys: QueueKeys) -> PermitSemaphore:
        return PermitSemaphore(self._client, self._scripts, keys.counter, keys.channel)

    def _request(self, values: Iterable[Any]) -> PermitRequest:
        encoded = []
        for value in values:
            # A stored None would be indistinguishable from an empty poll.
            if value is None:
                raise InvalidArgument("queue elements must not be None")
            encoded.append(self._codec.encode(value))
        return PermitRequest(queue=self._keys.queue, values=encoded)

    def _decode(self, raw: Any) -> Any:
        return None if raw is None else self._codec.decode(raw)

    # -- enqueue ---------------------------------------------------------

    async def add(self, value: Any) -> bool:
        """Enqueue without waiting; raise ``CapacityExceeded`` when full."""
        if not await self.offer(value):
            raise CapacityExceeded(self.name)
        return True

    async def put(self, value: Any) -> None:
        """Enqueue, waiting as long as it takes for a free permit."""
        await self._semaphore.acquire(request=self._request([value]))
        log.debug("element_put", queue=self.name)

    async def offer(self, value: Any, timeout: float | None = None) -> bool:
        """Enqueue if a permit frees up within ``timeout`` seconds.

        ``None`` makes a single non-blocking attempt.
        """
        accepted = await self._semaphore.try_acquire(
            request=self._request([value]), timeout=timeout,
        )
        log.debug("element_offered", queue=self.name, accepted=accepted)
        return accepted

    async def add_all(self, values: Iterable[Any]) -> bool:
        """Enqueue every value atomically, or none if permits are short."""
        if values is None:
            raise InvalidArgument("values must not be None")
        request = self._request(values)
        if not request.values:
            return False
        return await self._semaphore.try_acquire(request=request)

    # -- dequeue ---------------------------------------------------------

    async def take(self) -> Any:
        """Dequeue the head, waiting indefinitely for one to arrive."""
        return await self._blocking_pop(self._blpop([self.name], 0))

    async def poll(self, timeout: float | None = None) -> Any:
        """Dequeue the head, or return ``None``.

        ``None`` timeout never waits. ``0`` waits forever, any other value
        waits up to that many seconds.
        """
        if timeout is None:
            with remote_errors("poll"):
                raw = await self._scripts.poll_one(self._keys)
            return self._decode(raw)
        _check_timeout(timeout)
        return await self._blocking_pop(self._blpop([self.name], timeout))

    async def poll_from_any(self, timeout: float, *queue_names: str) -> Any:
        """Dequeue from whichever of this queue and ``queue_names`` has data first.

        The permit goes back to the queue the element actually came from.
        """
        _check_timeout(timeout)
        names = [self.name, *(n for n in queue_names if n != self.name)]
        return await self._blocking_pop(self._blpop(names, timeout))

    async def transfer_to(self, queue_name: str, timeout: float = 0) -> Any:
        """Move the tail of this queue to the head of ``queue_name``.

        Waits up to ``timeout`` seconds (``0`` forever). Returns the moved
        value, or ``None`` on timeout.
        """
        if not queue_name:
            raise InvalidArgument("destination queue name is required")
        _check_timeout(timeout)

        async def command(conn: Redis) -> tuple[str, Any] | None:
            value = await conn.brpoplpush(self.name, queue_name, timeout=timeout)
            return None if value is None else (self.name, value)

        return await self._blocking_pop(command)

    async def take_last_and_offer_first_to(self, queue_name: str) -> Any:
        return await self.transfer_to(queue_name, 0)

    def _blpop(self, names: list[str], timeout: float) -> PopCommand:
        async def command(conn: Redis) -> tuple[str, Any] | None:
            result = await conn.blpop(names, timeout=timeout)
            if result is None:
                return None
            source, value = result
            return _key_name(source), value

        return command

    async def _blocking_pop(self, command: PopCommand) -> Any:
        pop = BlockingPop(
            self._client,
            self._release_on,
            abort_attempts=self._abort_attempts,
            abort_grace=self._abort_grace,
        )
        with remote_errors("blocking pop"):
            raw = await pop.run(command)
        return self._decode(raw)

    async def _release_on(self, source: str) -> None:
        if source == self.name:
            await self._semaphore.release()
        else:
            await self._semaphore_for(QueueKeys.for_queue(source)).release()

    # -- bulk mutations --------------------------------------------------

    async def remove(self, value: Any) -> bool:
        return await self.remove_all([value])

    async def remove_all(self, values: Iterable[Any]) -> bool:
        """Remove the first occurrence of each value; True if any was removed."""
        if values is None:
            raise InvalidArgument("values must not be None")
        encoded = [self._codec.encode(v) for v in values]
        if not encoded:
            return False
        with remote_errors("remove_all"):
            removed = await self._scripts.remove_all(self._keys, encoded)
        log.debug("elements_removed", queue=self.name, requested=len(encoded), removed=removed)
        return removed

    async def drain_to(self, sink: MutableSequence[Any], max_elements: int | None = None) -> int:
        """Move up to ``max_elements`` (all when ``None``) into ``sink``, head first."""
        if sink is None:
            raise InvalidArgument("sink must not be None")
        if max_elements is not None and max_elements <= 0:
            return 0
        with remote_errors("drain_to"):
            raw = await self._scripts.drain(self._keys, max_elements)
        sink.extend(self._codec.decode(r) for r in raw)
        log.debug("elements_drained", queue=self.name, count=len(raw))
        return len(raw)

    async def clear(self) -> None:
        with remote_errors("clear"):
            count = await self._scripts.clear(self._keys)
        log.info("queue_cleared", queue=self.name, removed=count)

    # -- capacity --------------------------------------------------------

    async def try_set_capacity(self, capacity: int) -> bool:
        """Initialize the capacity. Only the first call per queue lifetime wins."""
        if capacity < 0:
            raise InvalidArgument(f"capacity must be >= 0, got {capacity}")
        with remote_errors("try_set_capacity"):
            applied = await self._scripts.try_set_capacity(self._keys, capacity)
        if applied:
            log.info("capacity_set", queue=self.name, capacity=capacity)
        return applied

    async def remaining_capacity(self) -> int:
        """Free permits right now. A snapshot, stale as soon as it returns."""
        return await self._semaphore.available_permits()

    # -- plain list reads ------------------------------------------------

    async def size(self) -> int:
        with remote_errors("size"):
            return await self._client.llen(self.name)

    async def is_empty(self) -> bool:
        return await self.size() == 0

    async def peek(self) -> Any:
        with remote_errors("peek"):
            raw = await self._client.lindex(self.name, 0)
        return self._decode(raw)

    async def read_all(self) -> list[Any]:
        with remote_errors("read_all"):
            raw = await self._client.lrange(self.name, 0, -1)
        return [self._codec.decode(r) for r in raw]

    # -- lifecycle -------------------------------------------------------

    async def delete(self) -> bool:
        """Delete the list and its counter together."""
        with remote_errors("delete"):
            deleted = await self._client.delete(*self._keys.lifecycle)
        log.info("queue_deleted", queue=self.name, keys=deleted)
        return deleted > 0

    async def expire(self, seconds: int) -> bool:
        return await self._for_each_key("expire", lambda pipe, key: pipe.expire(key, seconds))

    async def expire_at(self, when: datetime | int) -> bool:
        return await self._for_each_key("expire_at", lambda pipe, key: pipe.expireat(key, when))

    async def clear_expire(self) -> bool:
        return await self._for_each_key("clear_expire", lambda pipe, key: pipe.persist(key))

    async def size_in_memory(self) -> int:
        """Bytes used by the list and the counter, as reported by MEMORY USAGE."""
        with remote_errors("size_in_memory"):
            async with self._client.pipeline(transaction=False) as pipe:
                for key in self._keys.lifecycle:
                    pipe.memory_usage(key)
                sizes = await pipe.execute()
        return sum(s for s in sizes if s)

    async def _for_each_key(self, operation: str, queue_command) -> bool:
        with remote_errors(operation):
            async with self._client.pipeline(transaction=True) as pipe:
                for key in self._keys.lifecycle:
                    queue_command(pipe, key)
                results = await pipe.execute()
        return any(results)
