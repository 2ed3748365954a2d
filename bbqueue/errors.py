"""Queue error taxonomy.

Timeouts are not errors: blocking calls that run out of time return ``None``
(dequeue side) or ``False`` (enqueue side). Cancellation is not an error
either; ``asyncio.CancelledError`` always propagates untouched.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from redis.exceptions import RedisError


class QueueError(Exception):
    """Base class for every error raised by bbqueue."""


class CapacityExceeded(QueueError):
    """A non-blocking enqueue found no free permit."""

    def __init__(self, queue_name: str) -> None:
        super().__init__(f"Queue {queue_name!r} is full")
        self.queue_name = queue_name


class CapacityNotSet(QueueError):
    """A capacity-gated operation ran before ``try_set_capacity``."""

    def __init__(self, queue_name: str) -> None:
        super().__init__(f"Capacity of queue {queue_name!r} has not been set")
        self.queue_name = queue_name


class InterruptedWait(QueueError):
    """A synchronous blocking call was interrupted before it resolved."""


class RemoteExecutionFailure(QueueError):
    """A Redis command or script failed. The original error is ``__cause__``."""


class InvalidArgument(QueueError, ValueError):
    """Rejected before any remote call was issued."""


@contextmanager
def remote_errors(operation: str) -> Iterator[None]:
    """Re-raise Redis failures inside the block as ``RemoteExecutionFailure``."""
    try:
        yield
    except RedisError as exc:
        raise RemoteExecutionFailure(f"{operation} failed: {exc}") from exc
