"""Shared test fixtures."""

from __future__ import annotations

import fakeredis
import pytest
from httpx import ASGITransport, AsyncClient

import bbqueue.main as main_module
from bbqueue.config import AppConfig
from bbqueue.core.gateway import QueueGateway
from bbqueue.core.stats import GatewayStats
from bbqueue.queue.bounded import BoundedBlockingQueue


@pytest.fixture
def redis_server():
    """A fresh in-memory Redis server per test."""
    return fakeredis.FakeServer()


@pytest.fixture
async def redis_client(redis_server):
    client = fakeredis.aioredis.FakeRedis(server=redis_server)
    yield client
    await client.aclose()


@pytest.fixture
def queue(redis_client):
    return BoundedBlockingQueue(redis_client, "test-queue", abort_grace=0.02)


@pytest.fixture
def config():
    config = AppConfig()
    config.logging.level = "warning"
    config.queue.max_poll_timeout = 5.0
    return config


@pytest.fixture
def gateway(redis_client, config):
    """Initialize gateway singletons, the way the lifespan hook would."""
    stats = GatewayStats()
    gateway = QueueGateway(redis_client, stats, config.queue)

    # Patch module-level singletons
    main_module._config = config
    main_module._stats = stats
    main_module._gateway = gateway

    yield gateway

    # Cleanup
    main_module._config = None
    main_module._stats = None
    main_module._gateway = None


@pytest.fixture
async def client(gateway):
    from bbqueue.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def collect_messages():
    """Read published payloads until nothing arrives for ``wait`` seconds."""

    async def _collect(pubsub, wait: float = 0.2) -> list:
        messages = []
        while True:
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=wait)
            if message is None:
                return messages
            messages.append(message["data"])

    return _collect


@pytest.fixture
async def subscribe(redis_client):
    """Subscribe and consume the confirmation so later reads see only publishes."""
    opened = []

    async def _subscribe(channel: str):
        pubsub = redis_client.pubsub()
        opened.append(pubsub)
        await pubsub.subscribe(channel)
        await pubsub.get_message(timeout=1)
        return pubsub

    yield _subscribe

    for pubsub in opened:
        await pubsub.aclose()
