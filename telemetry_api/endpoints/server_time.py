"""GET /time - Hora del servidor para sincronizar el reloj de los dispositivos."""

import time

from fastapi import APIRouter

from ..schemas import ServerTimeOut

router = APIRouter(tags=["devices"])


@router.get("/time", response_model=ServerTimeOut)
def server_time():
    return ServerTimeOut(unix_time=int(time.time()))
