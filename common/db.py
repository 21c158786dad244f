from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from .config import get_settings


logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None


def create_db_engine(database_url: str) -> Engine:
    """Crea el engine SQLAlchemy para el store de telemetría.

    SQLite necesita check_same_thread=False porque el pipeline ejecuta las
    escrituras en threads de asyncio.to_thread.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    # Log básico de parámetros de conexión (sin contraseña)
    logger.info("[DB] Create engine url=%s", database_url.split("@")[-1])

    return create_engine(
        database_url,
        pool_pre_ping=True,
        future=True,
        connect_args=connect_args,
    )


def get_engine() -> Engine:
    global _engine

    if _engine is not None:
        return _engine

    settings = get_settings()
    _engine = create_db_engine(settings.database_url)

    # Test de conexión: ayuda a ver en logs si el servicio realmente llega a la BD
    try:
        with _engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("[DB] Connection test OK")
    except Exception:
        logger.exception("[DB] Connection test FAILED")

    return _engine


def ping(engine: Engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("[DB] Ping failed: %s", e)
        return False


def dispose_engine() -> None:
    global _engine

    if _engine is not None:
        _engine.dispose()
        _engine = None
