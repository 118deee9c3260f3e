"""Utilidades para credenciales opacas (tokens de dispositivo y de sesión).

Los tokens se guardan hasheados (SHA256): si la tabla se filtra, los
tokens en claro no quedan expuestos.
"""

from __future__ import annotations

import hashlib

# Contexto de los tokens usados por dispositivos desatendidos
LOG_TOKEN_CONTEXT = "log"
# Contexto de los tokens de sesión de dashboards
SESSION_TOKEN_CONTEXT = "session"

_BEARER_PREFIX = "bearer "


def hash_token(token: str) -> str:
    """Genera el hash SHA256 de un token."""
    return hashlib.sha256(token.encode()).hexdigest()


def normalize_credential(header_value: str | None) -> str:
    """Extrae la credencial del header Authorization.

    Acepta el token en crudo (firmware legacy) o con prefijo ``Bearer``.
    """
    if not header_value:
        return ""
    value = header_value.strip()
    if value.lower().startswith(_BEARER_PREFIX):
        value = value[len(_BEARER_PREFIX):].strip()
    return value
