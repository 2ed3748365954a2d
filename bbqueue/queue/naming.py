"""Redis key naming for a bounded queue.

The queue, its capacity counter and the counter's notification channel are
related only through these pure functions. Neither the queue nor the
semaphore holds a reference to the other.
"""

from __future__ import annotations

from dataclasses import dataclass

COUNTER_PREFIX = "bbq_bqs"
CHANNEL_PREFIX = "bbq_sc"


def prefix_name(prefix: str, name: str) -> str:
    """Prefix ``name``, wrapping it in a hash tag unless it already has one.

    The hash tag keeps a queue and its counter in the same cluster slot.
    """
    if "{" in name:
        return f"{prefix}:{name}"
    return f"{prefix}:{{{name}}}"


def counter_key(queue_key: str) -> str:
    return prefix_name(COUNTER_PREFIX, queue_key)


def channel_name(semaphore_key: str) -> str:
    """Channel a semaphore publishes its new permit count on."""
    return prefix_name(CHANNEL_PREFIX, semaphore_key)


@dataclass(frozen=True)
class QueueKeys:
    queue: str
    counter: str
    channel: str

    @classmethod
    def for_queue(cls, name: str) -> QueueKeys:
        counter = counter_key(name)
        return cls(queue=name, counter=counter, channel=channel_name(counter))

    @property
    def lifecycle(self) -> tuple[str, str, str]:
        """Names that delete/expire/persist/memory reports address as one unit.

        The channel holds no keyspace data, so Redis treats it as a missing key.
        """
        return (self.queue, self.counter, self.channel)
