"""Caché de autorización (credencial, dispositivo) -> AuthorizationEntry.

Evita el join completo de ownership en cada llamada de ingesta.

REGLAS:
- TTL corto (90s por defecto): una revocación se respeta como mucho
  tras un TTL, sin invalidación explícita.
- En un hit válido se extiende el TTL (no el contenido).
- Cualquier fallo del backend cuenta como miss: nunca bloquea ni falla
  la petición, el llamador cae al validador contra BD.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from .authorization import AuthorizationEntry
from .cache_backends import CacheBackend
from .tokens import hash_token

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 90
KEY_PREFIX = "authz"


class AuthorizationCache:

    def __init__(self, backend: CacheBackend, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self._backend = backend
        self._ttl = int(ttl_seconds)

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    @staticmethod
    def cache_key(credential: str, device_id: str) -> str:
        # La credencial nunca aparece en claro en el espacio de claves
        return f"{KEY_PREFIX}:{hash_token(credential)}:{device_id}"

    async def get(self, credential: str, device_id: str) -> Optional[AuthorizationEntry]:
        """Retorna la entrada o None (ausente, expirada, corrupta o backend caído)."""
        key = self.cache_key(credential, device_id)
        try:
            raw = await self._backend.get(key)
        except Exception as e:
            logger.warning("[AUTHZ_CACHE] get failed device_id=%s err=%s", device_id, e)
            return None

        if raw is None:
            return None

        try:
            return AuthorizationEntry.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(
                "[AUTHZ_CACHE] Corrupt entry ignored device_id=%s err=%s", device_id, e
            )
            return None

    async def put(
        self,
        credential: str,
        device_id: str,
        entry: AuthorizationEntry,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        key = self.cache_key(credential, device_id)
        try:
            await self._backend.set(key, entry.to_json(), ttl_seconds or self._ttl)
            return True
        except Exception as e:
            logger.warning("[AUTHZ_CACHE] put failed device_id=%s err=%s", device_id, e)
            return False

    async def refresh_ttl(self, credential: str, device_id: str) -> bool:
        key = self.cache_key(credential, device_id)
        try:
            return await self._backend.expire(key, self._ttl)
        except Exception as e:
            logger.warning(
                "[AUTHZ_CACHE] refresh_ttl failed device_id=%s err=%s", device_id, e
            )
            return False

    @staticmethod
    def is_valid(
        entry: Optional[AuthorizationEntry],
        device_id: str,
        group_id: str,
        sensor_ids: Iterable[str],
    ) -> bool:
        """Una entrada sirve solo si device y group coinciden exactamente y
        el conjunto de sensores es idéntico (ni subconjunto ni superconjunto).
        """
        if entry is None:
            return False
        if entry.device_id != device_id or entry.group_id != group_id:
            return False

        requested = set(sensor_ids)
        cached = set(entry.sensor_ids)
        if len(cached) != len(requested):
            return False
        return all(sensor_id in requested for sensor_id in cached)
