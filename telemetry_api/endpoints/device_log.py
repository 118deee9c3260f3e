"""POST /devices/log - Ingesta de lotes de lecturas desde dispositivos.

Con ``fast: true`` el lote se encola y se responde 202 de inmediato. Si
encolar falla se procesa en línea y se responde con el status síncrono.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import PlainTextResponse

from ..auth.tokens import normalize_credential
from ..dependencies import get_services
from ..pipeline.models import IngestStatus
from ..schemas import DeviceLogIn
from ..services import TelemetryServices

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ingest"])


@router.post("/devices/log", response_class=PlainTextResponse)
async def post_device_log(
    payload: DeviceLogIn,
    authorization: Optional[str] = Header(default=None),
    services: TelemetryServices = Depends(get_services),
):
    request = payload.to_request(normalize_credential(authorization))

    if payload.fast and request.credential and services.job_queue is not None:
        try:
            job_id = await services.job_queue.enqueue(request)
            logger.debug(
                "[LOG_QUEUE] Enqueued job_id=%s device_id=%s", job_id, request.device_id
            )
            status = IngestStatus.QUEUED
            return PlainTextResponse(status.message, status_code=status.http_status)
        except Exception as e:
            logger.error(
                "[LOG_QUEUE] Enqueue failed device_id=%s, processing inline: %s",
                request.device_id,
                e,
            )

    result = await services.pipeline.ingest(request)
    return PlainTextResponse(result.status.message, status_code=result.status.http_status)
