"""Distributed counting semaphore over a Redis counter and a pub/sub channel.

The counter holds the number of free permits. Every change to it is
published on the channel with the new value; waiters subscribe, retry the
atomic decrement on each notification, and once more when their deadline
expires. Waiters race on every notification, there is no FIFO hand-off.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from bbqueue.errors import CapacityNotSet, InvalidArgument, remote_errors
from bbqueue.queue.scripts import ACQUIRED, CAPACITY_NOT_SET

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from redis.asyncio.client import PubSub

    from bbqueue.queue.scripts import QueueScripts

log = structlog.get_logger()


@dataclass
class PermitRequest:
    """Values to push in the same atomic step that takes their permits."""
    queue: str
    values: list[bytes] = field(default_factory=list)

    @property
    def permits(self) -> int:
        return len(self.values)


class PermitSemaphore:
    """Counting semaphore shared by every process that knows the counter key."""

    def __init__(self, client: Redis, scripts: QueueScripts, counter: str, channel: str) -> None:
        self._client = client
        self._scripts = scripts
        self._counter = counter
        self._channel = channel

    @property
    def name(self) -> str:
        return self._counter

    async def try_acquire(
        self,
        permits: int = 1,
        request: PermitRequest | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Take ``permits`` if available.

        With ``timeout=None`` a single attempt is made. Otherwise the call
        waits up to ``timeout`` seconds for notifications.
        """
        if timeout is not None and timeout < 0:
            raise InvalidArgument(f"timeout must be >= 0, got {timeout}")
        permits = self._permits_for(permits, request)
        if timeout is None:
            return await self._attempt(permits, request)
        return await self._wait(permits, request, timeout)

    async def acquire(self, permits: int = 1, request: PermitRequest | None = None) -> None:
        """Block until ``permits`` have been taken."""
        permits = self._permits_for(permits, request)
        await self._wait(permits, request, None)

    async def release(self, permits: int = 1) -> int | None:
        """Give back ``permits`` and publish the new count.

        Returns the new count, or ``None`` if the counter was never set.
        """
        if permits <= 0:
            raise InvalidArgument(f"permits must be > 0, got {permits}")
        with remote_errors("release"):
            value = await self._scripts.release(self._counter, self._channel, permits)
        if value is None:
            log.debug("release_without_counter", counter=self._counter)
        else:
            log.debug("permits_released", counter=self._counter, permits=permits, available=value)
        return value

    async def available_permits(self) -> int:
        """Unsynchronized read of the counter; 0 when it was never set."""
        with remote_errors("available_permits"):
            value = await self._client.get(self._counter)
        return int(value) if value is not None else 0

    @staticmethod
    def _permits_for(permits: int, request: PermitRequest | None) -> int:
        if request is not None and request.values:
            return request.permits
        if permits <= 0:
            raise InvalidArgument(f"permits must be > 0, got {permits}")
        return permits

    async def _attempt(self, permits: int, request: PermitRequest | None) -> bool:
        with remote_errors("try_acquire"):
            if request is None:
                result = await self._scripts.try_acquire(self._counter, permits)
            else:
                result = await self._scripts.try_acquire(
                    self._counter, permits, request.queue, request.values,
                )
        if result == CAPACITY_NOT_SET:
            raise CapacityNotSet(request.queue if request is not None else self._counter)
        return result == ACQUIRED

    async def _wait(self, permits: int, request: PermitRequest | None, timeout: float | None) -> bool:
        """Attempt, then retry on each notification until acquired or expired.

        ``timeout=None`` waits forever. The subscription belongs to this call
        alone and is closed on every way out, cancellation included.
        """
        if await self._attempt(permits, request):
            return True

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        with remote_errors("permit wait"):
            async with self._client.pubsub() as pubsub:
                await pubsub.subscribe(self._channel)
                await self._confirm_subscription(pubsub, deadline)
                log.debug("permit_wait_started", counter=self._counter,
                          permits=permits, timeout=timeout)
                while True:
                    # The subscription is live now, so any release that the
                    # attempt below misses will still be published to us.
                    if await self._attempt(permits, request):
                        log.debug("permit_acquired", counter=self._counter, permits=permits)
                        return True

                    remaining = None
                    if deadline is not None:
                        remaining = deadline - loop.time()
                        if remaining <= 0:
                            log.debug("permit_wait_expired", counter=self._counter)
                            return False

                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=remaining,
                    )
                    if message is not None:
                        log.debug("permit_notification", counter=self._counter,
                                  available=message.get("data"))

    async def _confirm_subscription(self, pubsub: PubSub, deadline: float | None) -> None:
        """Read until Redis acknowledges SUBSCRIBE, or the deadline passes.

        ``subscribe()`` only writes the command. Until the acknowledgement
        arrives, a publish from another connection may be missed.
        """
        loop = asyncio.get_running_loop()
        while True:
            remaining = None
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return
            message = await pubsub.get_message(timeout=remaining)
            if message is not None and message["type"] == "subscribe":
                return
