"""Aplicación FastAPI del servicio de ingesta de telemetría.

El lifespan es dueño del pipeline: construye repositorio, transporte MQTT
y servicio al arrancar, y los detiene al apagar. Correr con:

    uvicorn telemetry_ingest.main:app
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.engine import Engine

from common.config import Settings, get_settings
from common.db import create_db_engine
from common.logging_config import setup_logging

from . import __version__
from .endpoints import health_router, sensors_router
from .infrastructure.persistence import SqlSensorRepository, ensure_schema
from .ingest import SensorRegistry, TelemetryIngestService
from .ingest.resilience import build_deduplicator
from .mqtt import IngestTransport, MQTTConnectionManager

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    engine: Optional[Engine] = None,
    transport: Optional[IngestTransport] = None,
) -> FastAPI:
    """Construye la app. ``engine``/``transport`` se inyectan en tests."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        setup_logging(cfg.log_level)

        owns_engine = engine is None
        db_engine = engine if engine is not None else create_db_engine(cfg.database_url)
        ensure_schema(db_engine)

        repository = SqlSensorRepository(db_engine)
        mqtt_transport = transport if transport is not None else MQTTConnectionManager(cfg.mqtt)
        service = TelemetryIngestService(
            repository,
            mqtt_transport,
            cfg.pipeline,
            deduplicator=build_deduplicator(
                cfg.pipeline.dedup_enabled,
                cfg.redis_url,
                cfg.pipeline.dedup_ttl_seconds,
            ),
        )

        app.state.settings = cfg
        app.state.repository = repository
        app.state.ingest_service = service
        app.state.registry = SensorRegistry(repository, service.resolver)

        await service.start()
        logger.info("[APP] Telemetry ingest %s started", __version__)
        try:
            yield
        finally:
            await service.stop()
            if owns_engine:
                db_engine.dispose()
            logger.info("[APP] Telemetry ingest stopped")

    app = FastAPI(title="Telemetry Ingest Service", version=__version__, lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(sensors_router)
    return app


app = create_app()
