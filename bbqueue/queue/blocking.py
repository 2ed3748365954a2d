"""Cancellable blocking pops.

A blocking pop (``BLPOP``, ``BRPOPLPUSH``) parks a consumer inside Redis and
cannot run inside a Lua script, so the permit release that must follow it is
a second, separate step. ``BlockingPop`` runs both steps in one background
task:

* the pop runs on a dedicated connection whose client id is known, so a
  cancelled caller can ask Redis to unblock it (``CLIENT UNBLOCK``) instead of
  dropping the connection under an in-flight reply;
* once the pop has delivered, the release always runs to completion, even if
  the caller has stopped waiting.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from typing import TYPE_CHECKING, Any

import structlog
from redis.exceptions import RedisError, ResponseError

if TYPE_CHECKING:
    from redis.asyncio import Redis

log = structlog.get_logger()

# (source queue, value) as returned by a pop command, or None on timeout.
PopResult = tuple[str, Any] | None
PopCommand = Callable[["Redis"], Awaitable[PopResult]]
ReleaseStep = Callable[[str], Awaitable[Any]]

# Strong references to tasks nobody awaits any more.
_background: set[asyncio.Task] = set()
# Release steps of pops that delivered. These must run to completion.
_releases: set[asyncio.Task] = set()


def _spawn(coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
    task = asyncio.create_task(coro, name=name)
    _background.add(task)
    task.add_done_callback(_background.discard)
    return task


def _log_orphan_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error("blocking_pop_orphan_failed", task=task.get_name(), exc_info=exc)


def pending_releases() -> set[asyncio.Task]:
    """Release steps of already-delivered pops still running on this loop."""
    loop = asyncio.get_running_loop()
    return {t for t in _releases if t.get_loop() is loop}


class BlockingPop:
    """One blocking pop plus its permit release, as a single cancellable unit."""

    def __init__(
        self,
        client: Redis,
        release: ReleaseStep,
        *,
        abort_attempts: int = 3,
        abort_grace: float = 0.05,
    ) -> None:
        self._client = client
        self._release = release
        self._abort_attempts = abort_attempts
        self._abort_grace = abort_grace
        self._connection_id: int | None = None
        self._delivered = False

    async def run(self, command: PopCommand) -> Any:
        """Pop with ``command`` and release one permit on the source queue.

        Returns the popped value, or ``None`` when the pop timed out.
        """
        task = _spawn(self._pop_then_release(command), "BlockingPop.pop_then_release")
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                task.add_done_callback(_log_orphan_failure)
                if not self._delivered:
                    _spawn(self._abort(task), "BlockingPop.abort")
            raise

    async def _pop_then_release(self, command: PopCommand) -> Any:
        async with self._client.client() as conn:
            try:
                self._connection_id = await self._client_id(conn)
                result = await command(conn)
            except asyncio.CancelledError:
                # A reply may still be owed on this connection; never reuse it.
                if conn.connection is not None:
                    await conn.connection.disconnect()
                raise
            if result is None:
                return None
            self._delivered = True
            source, value = result
            release = asyncio.create_task(self._release(source), name="BlockingPop.release")
            _releases.add(release)
            release.add_done_callback(_releases.discard)
            await asyncio.shield(release)
        return value

    @staticmethod
    async def _client_id(conn: Redis) -> int | None:
        try:
            return await conn.client_id()
        except ResponseError:
            log.debug("client_id_unavailable")
            return None

    async def _abort(self, task: asyncio.Task) -> None:
        """Best-effort removal of the parked consumer from Redis.

        ``CLIENT UNBLOCK`` makes the pop return nil as if it had timed out.
        If the pop is not parked yet, or its reply is already on the way, the
        grace wait lets it settle. Cancelling the task is the last resort: it
        drops the connection, which also unparks the consumer.
        """
        for _ in range(self._abort_attempts):
            if task.done() or self._delivered:
                return
            if self._connection_id is not None:
                try:
                    unblocked = await self._client.client_unblock(self._connection_id)
                except RedisError:
                    log.warning("blocking_pop_unblock_failed",
                                connection_id=self._connection_id, exc_info=True)
                    break
                if unblocked:
                    log.debug("blocking_pop_unblocked", connection_id=self._connection_id)
                    return
            await asyncio.wait({task}, timeout=self._abort_grace)

        if not task.done() and not self._delivered:
            log.debug("blocking_pop_cancelled", connection_id=self._connection_id)
            task.cancel()
