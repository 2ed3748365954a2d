"""Tests for the Redis-backed permit semaphore."""

from __future__ import annotations

import asyncio
import time

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from bbqueue.errors import CapacityNotSet, InvalidArgument, RemoteExecutionFailure
from bbqueue.queue.naming import QueueKeys
from bbqueue.queue.scripts import NOT_ACQUIRED, QueueScripts
from bbqueue.queue.semaphore import PermitRequest, PermitSemaphore


@pytest.fixture
def keys():
    return QueueKeys.for_queue("permits")


@pytest.fixture
def semaphore(redis_client, keys):
    return PermitSemaphore(redis_client, QueueScripts(redis_client), keys.counter, keys.channel)


@pytest.mark.asyncio
async def test_try_acquire_and_release(redis_client, semaphore, keys, subscribe, collect_messages):
    await redis_client.set(keys.counter, 2)

    assert await semaphore.try_acquire() is True
    assert await semaphore.try_acquire() is True
    assert await semaphore.try_acquire() is False
    assert await semaphore.available_permits() == 0

    pubsub = await subscribe(keys.channel)
    assert await semaphore.release(2) == 2
    assert await semaphore.available_permits() == 2
    assert await collect_messages(pubsub) == [b"2"]


@pytest.mark.asyncio
async def test_try_acquire_with_request_pushes_values(redis_client, semaphore, keys):
    await redis_client.set(keys.counter, 3)

    request = PermitRequest(queue=keys.queue, values=[b"1", b"2"])
    assert await semaphore.try_acquire(request=request) is True
    assert await redis_client.lrange(keys.queue, 0, -1) == [b"1", b"2"]
    assert await semaphore.available_permits() == 1


@pytest.mark.asyncio
async def test_acquire_without_counter_is_rejected(semaphore):
    with pytest.raises(CapacityNotSet):
        await semaphore.try_acquire()
    with pytest.raises(CapacityNotSet):
        await semaphore.acquire()
    assert await semaphore.available_permits() == 0


@pytest.mark.asyncio
async def test_invalid_arguments(semaphore):
    with pytest.raises(InvalidArgument):
        await semaphore.try_acquire(0)
    with pytest.raises(InvalidArgument):
        await semaphore.try_acquire(timeout=-1)
    with pytest.raises(InvalidArgument):
        await semaphore.release(0)


@pytest.mark.asyncio
async def test_try_acquire_timeout_expires(redis_client, semaphore, keys):
    await redis_client.set(keys.counter, 0)

    started = time.monotonic()
    assert await semaphore.try_acquire(timeout=0.3) is False
    assert time.monotonic() - started >= 0.25


@pytest.mark.asyncio
async def test_try_acquire_timeout_wakes_on_release(redis_client, semaphore, keys):
    await redis_client.set(keys.counter, 0)

    waiter = asyncio.create_task(semaphore.try_acquire(timeout=5))
    await asyncio.sleep(0.1)
    assert not waiter.done()

    await semaphore.release()
    assert await asyncio.wait_for(waiter, 2) is True
    assert await semaphore.available_permits() == 0


@pytest.mark.asyncio
async def test_acquire_many_waits_for_enough_permits(redis_client, semaphore, keys):
    await redis_client.set(keys.counter, 1)

    waiter = asyncio.create_task(semaphore.acquire(3))
    await semaphore.release()
    await asyncio.sleep(0.1)
    assert not waiter.done()
    assert await semaphore.available_permits() == 2

    await semaphore.release()
    await asyncio.wait_for(waiter, 2)
    assert await semaphore.available_permits() == 0


@pytest.mark.asyncio
async def test_cancelled_acquire_takes_nothing_later(redis_client, semaphore, keys):
    await redis_client.set(keys.counter, 0)

    waiter = asyncio.create_task(semaphore.acquire())
    await asyncio.sleep(0.1)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    await semaphore.release()
    await asyncio.sleep(0.2)
    assert await semaphore.available_permits() == 1


@pytest.mark.asyncio
async def test_wait_rechecks_only_after_subscription_confirmed(
    redis_client, semaphore, keys, monkeypatch,
):
    """A release published before SUBSCRIBE is acknowledged would be missed."""
    await redis_client.set(keys.counter, 0)
    events = []

    make_pubsub = redis_client.pubsub

    def recording_pubsub(**kwargs):
        pubsub = make_pubsub(**kwargs)
        get_message = pubsub.get_message

        async def recording_get_message(*args, **kw):
            message = await get_message(*args, **kw)
            if message is not None:
                events.append(message["type"])
            return message

        pubsub.get_message = recording_get_message
        return pubsub

    attempt = semaphore._attempt

    async def recording_attempt(*args):
        events.append("attempt")
        return await attempt(*args)

    monkeypatch.setattr(redis_client, "pubsub", recording_pubsub)
    monkeypatch.setattr(semaphore, "_attempt", recording_attempt)

    assert await semaphore.try_acquire(timeout=0.2) is False
    assert events[:3] == ["attempt", "subscribe", "attempt"]


@pytest.mark.asyncio
async def test_release_during_subscribe_is_not_lost(redis_client, semaphore, keys, monkeypatch):
    """A permit freed right after SUBSCRIBE is sent is picked up by the re-check."""
    await redis_client.set(keys.counter, 0)

    make_pubsub = redis_client.pubsub

    def releasing_pubsub(**kwargs):
        pubsub = make_pubsub(**kwargs)
        subscribe = pubsub.subscribe

        async def subscribe_then_release(*args, **kw):
            await subscribe(*args, **kw)
            await redis_client.incr(keys.counter)

        pubsub.subscribe = subscribe_then_release
        return pubsub

    monkeypatch.setattr(redis_client, "pubsub", releasing_pubsub)

    await asyncio.wait_for(semaphore.acquire(), 2)
    assert await semaphore.available_permits() == 0


@pytest.mark.asyncio
async def test_failed_attempt_while_waiting_names_the_attempt(redis_client, semaphore, keys, monkeypatch):
    await redis_client.set(keys.counter, 0)
    calls = []

    async def flaky_try_acquire(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            return NOT_ACQUIRED
        raise RedisConnectionError("connection reset")

    monkeypatch.setattr(semaphore._scripts, "try_acquire", flaky_try_acquire)

    with pytest.raises(RemoteExecutionFailure, match="try_acquire failed"):
        await semaphore.try_acquire(timeout=1)
    assert len(calls) == 2
