from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _default_env_file() -> str:
    # .env junto al directorio de trabajo; las variables reales tienen prioridad.
    return str(Path.cwd() / ".env")


def _read_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        parsed = float(value.strip())
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str
    use_redis: bool

    authz_cache_ttl_seconds: int
    publish_timeout_seconds: float

    sse_keepalive_seconds: float
    sse_queue_size: int

    log_queue_stream: str
    log_queue_group: str
    log_queue_dead_letter_stream: str
    log_worker_enabled: bool
    log_worker_max_retries: int
    log_worker_batch_size: int

    log_level: str


def get_settings() -> Settings:
    # Carga el .env (si existe) sin pisar variables de entorno reales.
    env_file = os.getenv("TELEMETRY_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    return Settings(
        database_url=_read_str("DATABASE_URL", "sqlite:///./telemetry.db"),
        redis_url=_read_str("REDIS_URL", "redis://localhost:6379/0"),
        use_redis=_read_bool("USE_REDIS", True),
        authz_cache_ttl_seconds=_read_int("AUTHZ_CACHE_TTL_SECONDS", 90),
        publish_timeout_seconds=_read_float("BROADCAST_PUBLISH_TIMEOUT_SECONDS", 2.0),
        sse_keepalive_seconds=_read_float("SSE_KEEPALIVE_SECONDS", 15.0),
        sse_queue_size=_read_int("SSE_QUEUE_SIZE", 1000),
        log_queue_stream=_read_str("LOG_QUEUE_STREAM", "ingest:log_jobs"),
        log_queue_group=_read_str("LOG_QUEUE_GROUP", "log_workers"),
        log_queue_dead_letter_stream=_read_str(
            "LOG_QUEUE_DEAD_LETTER_STREAM", "ingest:log_jobs:dead"
        ),
        log_worker_enabled=_read_bool("LOG_WORKER_ENABLED", True),
        log_worker_max_retries=_read_int("LOG_WORKER_MAX_RETRIES", 3),
        log_worker_batch_size=_read_int("LOG_WORKER_BATCH_SIZE", 10),
        log_level=_read_str("LOG_LEVEL", "INFO").upper(),
    )
