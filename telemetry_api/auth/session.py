"""Autenticación de dashboards (sesión) para endpoints SSE y de estado.

La sesión llega en la cookie ``session`` o en el header
``X-Session-Token`` y se resuelve contra ``user_tokens`` con contexto
``session``.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from ..dependencies import get_services
from ..repository.executor import run_blocking
from ..services import TelemetryServices
from .tokens import LOG_TOKEN_CONTEXT, SESSION_TOKEN_CONTEXT, normalize_credential

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session"


def _session_token(request: Request, header_value: Optional[str]) -> str:
    return (header_value or request.cookies.get(SESSION_COOKIE) or "").strip()


async def require_session_user(
    request: Request,
    x_session_token: Optional[str] = Header(default=None, alias="X-Session-Token"),
    services: TelemetryServices = Depends(get_services),
) -> str:
    """Dependency: retorna el user_id de la sesión o responde 401."""
    token = _session_token(request, x_session_token)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")

    user_id = await run_blocking(
        services.repository.resolve_credential, token, SESSION_TOKEN_CONTEXT
    )
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


async def resolve_session_or_log_user(
    request: Request,
    x_session_token: Optional[str] = Header(default=None, alias="X-Session-Token"),
    authorization: Optional[str] = Header(default=None),
    services: TelemetryServices = Depends(get_services),
) -> Optional[str]:
    """Sesión de dashboard primero; si no hay, credencial de dispositivo."""
    token = _session_token(request, x_session_token)
    if token:
        user_id = await run_blocking(
            services.repository.resolve_credential, token, SESSION_TOKEN_CONTEXT
        )
        if user_id:
            return user_id

    credential = normalize_credential(authorization)
    if credential:
        return await run_blocking(
            services.repository.resolve_credential, credential, LOG_TOKEN_CONTEXT
        )
    return None
