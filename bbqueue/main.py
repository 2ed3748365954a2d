"""bbqueue HTTP gateway: main entry point.

This is the only file that knows about concrete implementations.
It wires together the Redis client, the queue gateway and the API layers.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from bbqueue.api.monitoring import VERSION
from bbqueue.api.monitoring import router as monitoring_router
from bbqueue.api.queues import router as queues_router
from bbqueue.config import AppConfig, load_config
from bbqueue.core.gateway import QueueGateway
from bbqueue.core.stats import GatewayStats
from bbqueue.errors import CapacityNotSet, InvalidArgument, RemoteExecutionFailure

log = structlog.get_logger()

# Module-level singletons (set during startup)
_gateway: QueueGateway | None = None
_stats: GatewayStats | None = None
_config: AppConfig | None = None


def get_gateway() -> QueueGateway:
    assert _gateway is not None, "Gateway not initialized"
    return _gateway


def get_stats() -> GatewayStats:
    assert _stats is not None, "Gateway not initialized"
    return _stats


def get_config() -> AppConfig:
    assert _config is not None, "Gateway not initialized"
    return _config


def setup_logging(config: AppConfig) -> None:
    """Configure structlog based on the logging config."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.logging.format == "json":
        processors.append(structlog.processors.dict_tracebacks)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.logging.level.upper()),
        ),
    )


def create_client(config: AppConfig) -> Redis:
    return Redis.from_url(
        config.redis.url,
        socket_connect_timeout=config.redis.socket_connect_timeout,
        health_check_interval=config.redis.health_check_interval,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global _gateway, _stats, _config

    _config = load_config()
    setup_logging(_config)

    log.info("gateway_starting",
             env=_config.server.env,
             redis_url=_config.redis.url,
             codec=_config.queue.codec)

    client = create_client(_config)
    _stats = GatewayStats()
    _gateway = QueueGateway(client, _stats, _config.queue)

    log.info("gateway_started",
             host=_config.server.host,
             port=_config.server.port)

    yield

    await client.aclose()
    log.info("gateway_stopped")


app = FastAPI(
    title="bbqueue",
    description="HTTP gateway to Redis-backed bounded blocking queues",
    version=VERSION,
    lifespan=lifespan,
)

app.include_router(monitoring_router)
app.include_router(queues_router)


@app.exception_handler(InvalidArgument)
async def _invalid_argument(request: Request, exc: InvalidArgument) -> JSONResponse:
    return JSONResponse(content={"error": str(exc)}, status_code=400)


@app.exception_handler(CapacityNotSet)
async def _capacity_not_set(request: Request, exc: CapacityNotSet) -> JSONResponse:
    return JSONResponse(content={"accepted": False, "error": str(exc)}, status_code=412)


@app.exception_handler(RemoteExecutionFailure)
async def _remote_failure(request: Request, exc: RemoteExecutionFailure) -> JSONResponse:
    return JSONResponse(content={"error": "redis unavailable"}, status_code=503)


def main() -> None:
    config = load_config()
    uvicorn.run("bbqueue.main:app", host=config.server.host, port=config.server.port)


if __name__ == "__main__":
    main()
