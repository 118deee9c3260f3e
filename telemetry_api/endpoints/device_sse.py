"""Streams SSE de eventos de dispositivos para dashboards.

- GET /devices/{device_id}/sse
- GET /devices/sse?deviceIds=a,b,c

Cada evento sale como ``data: <json>\\n\\n``. Se envía un comentario
keep-alive periódico para que proxies no corten la conexión.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from ..auth.session import require_session_user
from ..broadcast.subscriber import EventHub, Subscription
from ..dependencies import get_services
from ..repository.executor import run_blocking
from ..services import TelemetryServices

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sse"])

KEEP_ALIVE = ": keep-alive\n\n"

_SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(item: dict) -> str:
    return f"data: {json.dumps(item, separators=(',', ':'))}\n\n"


async def event_stream(
    request: Request,
    hub: EventHub,
    subscription: Subscription,
    keepalive_seconds: float,
) -> AsyncIterator[str]:
    """Emite los eventos de la suscripción hasta que el cliente se va."""
    try:
        while True:
            if await request.is_disconnected():
                break
            item = await subscription.get(timeout=keepalive_seconds)
            if item is None:
                yield KEEP_ALIVE
                continue
            yield format_sse(item)
    except asyncio.CancelledError:
        logger.debug("[SSE] Stream cancelled sub=%s", subscription.id)
        raise
    finally:
        await hub.unsubscribe(subscription)


def _parse_device_ids(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    seen = []
    for part in raw.split(","):
        device_id = part.strip()
        if device_id and device_id not in seen:
            seen.append(device_id)
    return seen


async def _open_stream(
    request: Request,
    services: TelemetryServices,
    user_id: str,
    device_ids: List[str],
) -> StreamingResponse:
    for device_id in device_ids:
        owns = await run_blocking(services.repository.user_owns_device, user_id, device_id)
        if not owns:
            raise HTTPException(status_code=403, detail="Forbidden")

    try:
        subscription = await services.hub.subscribe(device_ids)
    except Exception as e:
        logger.error("[SSE] Subscribe failed devices=%s err=%s", device_ids, e)
        raise HTTPException(status_code=503, detail="Broadcast unavailable")

    return StreamingResponse(
        event_stream(
            request,
            services.hub,
            subscription,
            services.settings.sse_keepalive_seconds,
        ),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@router.get("/devices/sse")
async def stream_devices(
    request: Request,
    device_ids: Optional[str] = Query(default=None, alias="deviceIds"),
    user_id: str = Depends(require_session_user),
    services: TelemetryServices = Depends(get_services),
):
    ids = _parse_device_ids(device_ids)
    if not ids:
        raise HTTPException(status_code=400, detail="Device IDs are required")
    return await _open_stream(request, services, user_id, ids)


@router.get("/devices/{device_id}/sse")
async def stream_device(
    device_id: str,
    request: Request,
    user_id: str = Depends(require_session_user),
    services: TelemetryServices = Depends(get_services),
):
    return await _open_stream(request, services, user_id, [device_id])
