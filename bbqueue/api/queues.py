"""Queue API endpoints.

This is the thin FastAPI adapter. It parses JSON request bodies and calls the
gateway. Error mapping (400 / 412 / 503) lives in the exception handlers
registered by ``bbqueue.main``.
"""

from __future__ import annotations

import json

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from bbqueue.errors import InvalidArgument

router = APIRouter(prefix="/api/v1/queues")


async def _json_body(request: Request) -> dict:
    """Parse an optional JSON object body. Empty bodies are ``{}``."""
    body_bytes = await request.body()
    if not body_bytes:
        return {}
    try:
        body = json.loads(body_bytes)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidArgument("invalid JSON") from None
    if not isinstance(body, dict):
        raise InvalidArgument("request body must be a JSON object")
    return body


def _optional_number(body: dict, key: str) -> float | None:
    value = body.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidArgument(f"{key} must be a number")
    return float(value)


@router.get("/{name}")
async def describe_queue(name: str) -> JSONResponse:
    from bbqueue.main import get_gateway

    return JSONResponse(content=await get_gateway().describe(name))


@router.put("/{name}/capacity")
async def set_capacity(name: str, request: Request) -> JSONResponse:
    """Initialize the queue's capacity. Only the first call takes effect.

    Body: {"capacity": 100}
    """
    from bbqueue.main import get_gateway

    body = await _json_body(request)
    capacity = body.get("capacity")
    if isinstance(capacity, bool) or not isinstance(capacity, int):
        raise InvalidArgument("capacity must be an integer")
    applied = await get_gateway().set_capacity(name, capacity)
    return JSONResponse(content={"applied": applied})


@router.post("/{name}/offer")
async def offer(name: str, request: Request) -> JSONResponse:
    """Enqueue one value if the queue has room.

    Body: {"value": ..., "timeout": 2.5}
    - 202: enqueued
    - 409: still full after ``timeout`` (or at once without it)
    """
    from bbqueue.main import get_gateway

    body = await _json_body(request)
    if body.get("value") is None:
        raise InvalidArgument("value is required and must not be null")
    timeout = _optional_number(body, "timeout")

    accepted = await get_gateway().offer(name, body["value"], timeout)
    if not accepted:
        return JSONResponse(
            content={"accepted": False, "error": "queue is full"}, status_code=409,
        )
    return JSONResponse(content={"accepted": True}, status_code=202)


@router.post("/{name}/poll")
async def poll(name: str, request: Request) -> Response:
    """Dequeue one value; 204 when the queue stayed empty.

    Body (optional): {"timeout": 5}
    """
    from bbqueue.main import get_gateway

    body = await _json_body(request)
    timeout = _optional_number(body, "timeout")

    value = await get_gateway().poll(name, timeout)
    if value is None:
        return Response(status_code=204)
    return JSONResponse(content={"value": value})


@router.post("/{name}/drain")
async def drain(name: str, request: Request) -> JSONResponse:
    """Atomically remove up to ``max`` values (all when omitted), head first.

    Body (optional): {"max": 10}
    """
    from bbqueue.main import get_gateway

    body = await _json_body(request)
    max_elements = body.get("max")
    if max_elements is not None and (isinstance(max_elements, bool) or not isinstance(max_elements, int)):
        raise InvalidArgument("max must be an integer")

    values = await get_gateway().drain(name, max_elements)
    return JSONResponse(content={"values": values, "count": len(values)})


@router.delete("/{name}/elements")
async def clear(name: str) -> JSONResponse:
    from bbqueue.main import get_gateway

    await get_gateway().clear(name)
    return JSONResponse(content={"cleared": True})


@router.delete("/{name}")
async def delete_queue(name: str) -> JSONResponse:
    """Delete the queue together with its capacity counter."""
    from bbqueue.main import get_gateway

    deleted = await get_gateway().delete(name)
    return JSONResponse(content={"deleted": deleted})
