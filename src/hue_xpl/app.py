from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse

from hue_xpl.config import AppConfig
from hue_xpl.event_hub import EventHub
from hue_xpl.models import Rejected, XplCommandBody
from hue_xpl.schemas import (
    CommandRejectedResponse,
    CommandResponse,
    HealthResponse,
    ReadinessResponse,
    StateResponse,
)
from hue_xpl.service import BridgeService


@dataclass
class AppState:
    config: AppConfig
    service: BridgeService
    hub: EventHub


app = FastAPI(
    title="Hue xPL Bridge",
    version="0.1.0",
    description=(
        "# Hue xPL Bridge\n\n"
        "Polls a Hue bridge, publishes attribute changes on the xPL bus as `sensor.basic` "
        "status messages and applies `x10.basic` / `delabarre.command` commands.\n\n"
        "This HTTP surface is for operations:\n\n"
        "- `GET /healthz` liveness\n"
        "- `GET /readyz` readiness (first sync done, bridge not failing)\n"
        "- `GET /v1/state` last published state per routing key\n"
        "- `POST /v1/commands` run a command body exactly like an inbound xPL command\n"
        "- `GET /v1/events/stream` SSE stream of published changes\n"
    ),
)

logger = logging.getLogger("hue_xpl")


def _state() -> AppState:
    return app.state.state


@app.middleware("http")
async def access_log(request: Request, call_next: Callable[[Request], Response]):
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s -> %s (%.1fms)",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.get("/healthz", summary="Liveness check", response_model=HealthResponse, tags=["meta"])
async def healthz() -> HealthResponse:
    return {"ok": True}


@app.get(
    "/readyz",
    summary="Readiness check",
    description=(
        "Returns `ready=true` once a full poll succeeded and the consecutive error count "
        "is below the retry ceiling.\n\n"
        "Not-ready reasons:\n"
        "- `not_synced`\n"
        "- `bridge_failing`\n"
    ),
    response_model=ReadinessResponse,
    tags=["meta"],
)
async def readyz() -> ReadinessResponse:
    scheduler = _state().service.scheduler
    if scheduler.last_sync_at is None:
        return JSONResponse({"ready": False, "reason": "not_synced"}, status_code=503)
    if scheduler.error_count >= scheduler.retry_ceiling:
        return JSONResponse(
            {"ready": False, "reason": "bridge_failing", "details": {"errorCount": scheduler.error_count}},
            status_code=503,
        )
    return {"ready": True}


@app.get("/v1/state", summary="Cached device state", response_model=StateResponse, tags=["state"])
async def get_state() -> StateResponse:
    scheduler = _state().service.scheduler
    last = scheduler.last_sync_at
    return StateResponse(
        state=scheduler.state,
        errorCount=scheduler.error_count,
        lastSyncAt=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(last)) if last is not None else None,
        devices=scheduler.cache.snapshot(),
    )


@app.post(
    "/v1/commands",
    summary="Execute a command",
    description=(
        "Accepts the body of an xPL `x10.basic` / `delabarre.command` message, e.g.\n\n"
        "```json\n"
        "{ \"command\": \"status\", \"device\": \"kitchen,hall\", \"current\": \"enable\" }\n"
        "```\n"
        "Rejected commands return **400**; targets the bridge refused return **502**."
    ),
    responses={
        200: {"model": CommandResponse},
        400: {"model": CommandRejectedResponse},
        502: {"model": CommandResponse},
    },
    tags=["commands"],
)
async def post_command(body: XplCommandBody):
    result = await _state().service.submit(body)
    if isinstance(result, Rejected):
        payload = CommandRejectedResponse(error={"code": "rejected", "message": result.reason})
        return JSONResponse(payload.model_dump(mode="json"), status_code=status.HTTP_400_BAD_REQUEST)

    payload = CommandResponse(
        ok=result.ok,
        op=result.op,
        applied=[t.label for t in result.applied],
        failed=[{"target": t.label, "error": err} for t, err in result.failed],
    )
    status_code = status.HTTP_200_OK if result.ok else status.HTTP_502_BAD_GATEWAY
    return JSONResponse(payload.model_dump(mode="json"), status_code=status_code)


@app.get(
    "/v1/events/stream",
    summary="Published change stream (SSE)",
    description=(
        "Server-Sent Events stream of every change record published on the bus.\n"
        "The bridge may send keepalive comment frames (`: keepalive`)."
    ),
    tags=["events"],
    responses={200: {"content": {"text/event-stream": {"schema": {"type": "string"}}}}},
)
async def events_stream():
    subscription = await _state().hub.subscribe()

    async def _gen():
        try:
            while True:
                try:
                    event = await asyncio.wait_for(subscription.queue.get(), timeout=15.0)
                    yield f"data: {json.dumps(event, separators=(',', ':'))}\n\n"
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
        finally:
            await subscription.unsubscribe()

    return StreamingResponse(_gen(), media_type="text/event-stream")
