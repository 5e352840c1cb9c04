"""FastAPI entrypoint for the heartbeat service."""

import asyncio
from functools import partial
import logging
from time import monotonic
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response, status

from heartbeat_info.config import get_settings
from heartbeat_info.kv import KeyValueBackendError, create_key_value_store
from heartbeat_info.registry import HeartBeatControllerRegistry
from heartbeat_info.report import HeartBeatEncodingError
from heartbeat_info.storage import GLOBAL_TAG
from heartbeat_info.user_agent import DefaultUserAgentPublisher

settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
app = FastAPI(title=settings.app_name, version=settings.app_version)
started_at_monotonic = monotonic()
kv_logger = logging.getLogger("heartbeat_info.kv")
request_logger = logging.getLogger("heartbeat_info.request")
heartbeat_logger = logging.getLogger("heartbeat_info.controller")
kv_store, kv_store_is_shared = create_key_value_store(
    backend=settings.storage_backend,
    redis_url=settings.redis_url,
    prefix=settings.storage_prefix,
    logger=kv_logger,
)
user_agent_publisher = DefaultUserAgentPublisher.from_tokens(settings.user_agent_libraries)
controllers = HeartBeatControllerRegistry(
    kv_store,
    consumers=frozenset(settings.heartbeat_consumers),
    user_agent_publisher=user_agent_publisher,
    limit=settings.heartbeat_count_limit,
    idle_timeout_seconds=settings.worker_idle_timeout_seconds,
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next: Any) -> Response:
    started = monotonic()
    path = request.url.path
    method = request.method.upper()
    try:
        response = await call_next(request)
    except Exception:
        latency_ms = int((monotonic() - started) * 1000)
        request_logger.exception(
            "request method=%s path=%s status=%s latency_ms=%s",
            method,
            path,
            500,
            latency_ms,
        )
        raise

    latency_ms = int((monotonic() - started) * 1000)
    request_logger.info(
        "request method=%s path=%s status=%s latency_ms=%s",
        method,
        path,
        response.status_code,
        latency_ms,
    )
    return response


@app.on_event("shutdown")
async def shutdown_event() -> None:
    await controllers.aclose()
    await kv_store.close()


@app.get("/api/v1", tags=["meta"])
async def api_root() -> dict[str, str]:
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "ok",
    }


@app.post(
    "/api/v1/apps/{persistence_key}/heartbeats",
    status_code=status.HTTP_202_ACCEPTED,
    tags=["heartbeats"],
)
async def register_heartbeat(persistence_key: str) -> dict[str, str]:
    controllers.get_or_create(persistence_key).register_heartbeat()
    return {"status": "accepted"}


def _log_abandoned_header(persistence_key: str, handle: asyncio.Future) -> None:
    if handle.cancelled():
        return
    exc = handle.exception()
    if exc is not None:
        heartbeat_logger.warning(
            "heartbeat_header_abandoned persistence_key=%s error=%r", persistence_key, exc
        )
        return
    heartbeat_logger.warning(
        "heartbeat_header_abandoned persistence_key=%s header=%s",
        persistence_key,
        handle.result(),
    )


@app.get("/api/v1/apps/{persistence_key}/heartbeats/header", tags=["heartbeats"])
async def heartbeats_header(persistence_key: str) -> dict[str, str]:
    handle = controllers.get_or_create(persistence_key).get_heartbeats_header()
    try:
        # The drain runs even if the client goes away; keep its result observable.
        header = await asyncio.shield(handle)
    except asyncio.CancelledError:
        handle.add_done_callback(partial(_log_abandoned_header, persistence_key))
        raise
    except KeyValueBackendError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Heartbeat storage is unavailable",
        ) from exc
    except HeartBeatEncodingError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Unable to encode heartbeat header",
        ) from exc
    return {"header": header}


@app.post("/api/v1/apps/{persistence_key}/gates/{tag}", tags=["gates"])
async def should_send(persistence_key: str, tag: str) -> dict[str, Any]:
    controller = controllers.get_or_create(persistence_key)
    try:
        if tag == GLOBAL_TAG:
            approved = await controller.should_send_global_heartbeat()
        else:
            approved = await controller.should_send_sdk_heartbeat(tag)
    except KeyValueBackendError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Heartbeat storage is unavailable",
        ) from exc
    return {"tag": tag, "should_send": approved}


@app.get("/api/v1/health", tags=["health"])
async def basic_health() -> dict[str, int | str]:
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "storage_backend": "redis" if kv_store_is_shared else "memory",
        "controllers_count": controllers.size,
        "uptime_seconds": int(monotonic() - started_at_monotonic),
    }


def run() -> None:
    """Serve the app with uvicorn; one process per set of persistence keys."""

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
