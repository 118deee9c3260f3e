"""Autorización de ingesta: caché TTL + validación de ownership contra BD.

``ownership_validator`` y ``session`` se importan desde su módulo: dependen
del repositorio y del contenedor de servicios.
"""

from .authorization import AuthorizationEntry, AuthorizationError, AuthorizationReason
from .authorization_cache import AuthorizationCache
from .cache_backends import CacheBackend, InMemoryCacheBackend, RedisCacheBackend
from .tokens import LOG_TOKEN_CONTEXT, SESSION_TOKEN_CONTEXT, hash_token

__all__ = [
    "AuthorizationEntry",
    "AuthorizationError",
    "AuthorizationReason",
    "AuthorizationCache",
    "CacheBackend",
    "InMemoryCacheBackend",
    "RedisCacheBackend",
    "LOG_TOKEN_CONTEXT",
    "SESSION_TOKEN_CONTEXT",
    "hash_token",
]
