"""POST /devices/{device_id}/status - Reporte de firmware del dispositivo.

Actualiza el firmware activo y avisa si hay uno asignado distinto
(el dispositivo debe actualizarse).
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response

from ..auth.session import resolve_session_or_log_user
from ..broadcast.events import StatusEvent
from ..dependencies import get_services
from ..repository.executor import run_blocking
from ..schemas import DeviceStatusIn, FirmwareNotice
from ..services import TelemetryServices

logger = logging.getLogger(__name__)

router = APIRouter(tags=["devices"])


@router.post("/devices/{device_id}/status")
async def post_device_status(
    device_id: str,
    payload: DeviceStatusIn,
    user_id: Optional[str] = Depends(resolve_session_or_log_user),
    services: TelemetryServices = Depends(get_services),
):
    if not user_id:
        raise HTTPException(status_code=403, detail="Error: bad token")

    repository = services.repository
    if not await run_blocking(repository.user_owns_device, user_id, device_id):
        raise HTTPException(status_code=403, detail="Error: user does not own device")

    if not payload.firmware_version:
        raise HTTPException(status_code=400, detail="Firmware version is required")

    await run_blocking(repository.update_active_firmware, device_id, payload.firmware_version)

    try:
        await services.publisher.publish(
            device_id,
            StatusEvent(device_id=device_id, active_firmware_version=payload.firmware_version),
        )
    except Exception as e:
        logger.warning("[STATUS] Broadcast failed device_id=%s err=%s", device_id, e)

    firmware_id = await run_blocking(repository.get_firmware_id_for_update, device_id)
    if firmware_id:
        logger.info(
            "[STATUS] Firmware update required device_id=%s firmware_id=%s",
            device_id,
            firmware_id,
        )
        return FirmwareNotice(firmware_id=firmware_id, unix_time=int(time.time()))

    return Response(status_code=200)
