"""Blocking (thread-based) front end for ``BoundedBlockingQueue``.

The async queue runs on a private event loop in a daemon thread. Each call
submits a coroutine there and parks the calling thread on the result, so any
number of threads can share one Redis connection pool.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from collections.abc import Callable, Coroutine, Iterable, MutableSequence
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from bbqueue.errors import InterruptedWait
from bbqueue.queue.blocking import pending_releases
from bbqueue.queue.bounded import BoundedBlockingQueue

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from bbqueue.queue.codec import Codec

log = structlog.get_logger()

T = TypeVar("T")


class EventLoopThread:
    """An event loop running forever in its own daemon thread."""

    def __init__(self, name: str = "bbqueue-loop") -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def submit(self, coro: Coroutine[Any, Any, T]) -> concurrent.futures.Future[T]:
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def stop(self) -> None:
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join()
        self._loop.close()


class SyncBoundedBlockingQueue:
    """Thread-blocking variant of every ``BoundedBlockingQueue`` operation.

    ``client_factory`` is called once, and the client it returns is only
    ever used from the private loop.

    A blocking call interrupted by ``KeyboardInterrupt``, or cut short by
    ``close()``, cancels the underlying coroutine and raises
    ``InterruptedWait``. Other errors are re-raised as the async queue
    raised them.
    """

    def __init__(
        self,
        client_factory: Callable[[], Redis],
        name: str,
        codec: Codec | None = None,
        **queue_options: Any,
    ) -> None:
        self._runner = EventLoopThread(name=f"bbqueue-{name}")
        self._runner.start()
        self._client = client_factory()
        self._queue = BoundedBlockingQueue(self._client, name, codec, **queue_options)
        self._closed = False

    @property
    def name(self) -> str:
        return self._queue.name

    def _call(self, coro: Coroutine[Any, Any, T]) -> T:
        if self._closed:
            coro.close()
            raise InterruptedWait(f"queue {self.name!r} is closed")
        future = self._runner.submit(coro)
        try:
            return future.result()
        except KeyboardInterrupt as exc:
            future.cancel()
            raise InterruptedWait(f"wait on queue {self.name!r} was interrupted") from exc
        except concurrent.futures.CancelledError as exc:
            raise InterruptedWait(f"wait on queue {self.name!r} was cancelled") from exc

    def add(self, value: Any) -> bool:
        return self._call(self._queue.add(value))

    def put(self, value: Any) -> None:
        self._call(self._queue.put(value))

    def offer(self, value: Any, timeout: float | None = None) -> bool:
        return self._call(self._queue.offer(value, timeout))

    def add_all(self, values: Iterable[Any]) -> bool:
        return self._call(self._queue.add_all(values))

    def take(self) -> Any:
        return self._call(self._queue.take())

    def poll(self, timeout: float | None = None) -> Any:
        return self._call(self._queue.poll(timeout))

    def poll_from_any(self, timeout: float, *queue_names: str) -> Any:
        return self._call(self._queue.poll_from_any(timeout, *queue_names))

    def transfer_to(self, queue_name: str, timeout: float = 0) -> Any:
        return self._call(self._queue.transfer_to(queue_name, timeout))

    def remove(self, value: Any) -> bool:
        return self._call(self._queue.remove(value))

    def remove_all(self, values: Iterable[Any]) -> bool:
        return self._call(self._queue.remove_all(values))

    def drain_to(self, sink: MutableSequence[Any], max_elements: int | None = None) -> int:
        return self._call(self._queue.drain_to(sink, max_elements))

    def clear(self) -> None:
        self._call(self._queue.clear())

    def try_set_capacity(self, capacity: int) -> bool:
        return self._call(self._queue.try_set_capacity(capacity))

    def remaining_capacity(self) -> int:
        return self._call(self._queue.remaining_capacity())

    def size(self) -> int:
        return self._call(self._queue.size())

    def peek(self) -> Any:
        return self._call(self._queue.peek())

    def read_all(self) -> list[Any]:
        return self._call(self._queue.read_all())

    def delete(self) -> bool:
        return self._call(self._queue.delete())

    def close(self) -> None:
        """Cancel in-flight calls, close the client and stop the loop."""
        if self._closed:
            return
        self._closed = True
        self._runner.submit(self._shutdown()).result()
        self._runner.stop()
        log.debug("sync_queue_closed", queue=self.name)

    async def _shutdown(self) -> None:
        current = asyncio.current_task()
        releases = pending_releases()
        pending = [t for t in asyncio.all_tasks() if t is not current and t not in releases]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        # Permits of elements already handed out still go back.
        await asyncio.gather(*pending_releases(), return_exceptions=True)
        await self._client.aclose()

    def __enter__(self) -> SyncBoundedBlockingQueue:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
