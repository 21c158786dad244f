"""Persistencia SQL del servicio de telemetría."""

from .schema import ensure_schema, metadata
from .sensor_repository import AlertBuilder, SensorRepository, SqlSensorRepository

__all__ = [
    "AlertBuilder",
    "SensorRepository",
    "SqlSensorRepository",
    "ensure_schema",
    "metadata",
]
