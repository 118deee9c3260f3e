from __future__ import annotations

import logging

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url

from .config import Settings, get_settings
from .schema import metadata


logger = logging.getLogger(__name__)


def create_db_engine(settings: Settings | None = None) -> Engine:
    settings = settings or get_settings()
    url = make_url(settings.database_url)

    # Log de parámetros de conexión (sin contraseña)
    logger.info(
        "[DB] Creating engine backend=%s host=%s db=%s",
        url.get_backend_name(),
        url.host,
        url.database,
    )

    kwargs: dict = {"pool_pre_ping": True, "future": True}
    if url.get_backend_name() == "sqlite":
        # El pipeline usa la conexión desde el thread pool del event loop.
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_recycle"] = 300

    engine = create_engine(url, **kwargs)

    # Test de conexión: deja en logs si el servicio realmente llega a la BD
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("[DB] Connection test OK")
    except Exception:
        logger.exception("[DB] Connection test FAILED")

    return engine


def ensure_schema(engine: Engine) -> None:
    """Crea las tablas si no existen. Seguro de llamar varias veces."""
    logger.info("[DB] Ensuring schema exists")
    metadata.create_all(engine)


def check_connection(engine: Engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        logger.exception("[DB] Readiness check failed")
        return False
