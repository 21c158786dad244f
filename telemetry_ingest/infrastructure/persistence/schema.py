"""Esquema SQL del store de telemetría.

Tablas:
- available_sensors: catálogo de dispositivos fabricados y su dueño actual
- sensors: registro del sensor (snapshot + umbrales), uno por dueño activo
- sensor_readings: historial append-only de lecturas
- sensor_alerts: alertas generadas por transiciones de estado
- sensor_ownership_history: dueños anteriores de cada id físico

Idempotente: ensure_schema() se puede llamar en cada arranque.
"""

from __future__ import annotations

import logging

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
)
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

metadata = MetaData()

available_sensors = Table(
    "available_sensors",
    metadata,
    Column("physical_id", String(64), primary_key=True),
    Column("sensor_type", String(32), nullable=False),
    Column("firmware_version", String(32), nullable=True),
    Column("manufactured_at", DateTime, nullable=True),
    Column("sim_card_number", String(32), nullable=True),
    Column("registered_to_user", String(128), nullable=True),
    Column("registered_at", DateTime, nullable=True),
)

sensors = Table(
    "sensors",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("physical_id", String(64), nullable=False, index=True),
    Column("user_id", String(128), nullable=False, index=True),
    Column("building_id", String(128), nullable=True),
    Column("name", String(255), nullable=False),
    Column("sensor_type", String(32), nullable=False),
    Column("location", String(255), nullable=True),
    Column("unit", String(16), nullable=False),
    Column("secondary_unit", String(16), nullable=True),
    Column("battery_level", Float, nullable=True),
    Column("signal_strength", Float, nullable=True),
    Column("current_value", Float, nullable=True),
    Column("secondary_value", Float, nullable=True),
    Column("last_communication", DateTime, nullable=True),
    Column("status", String(16), nullable=False, default="pending"),
    Column("warning_lower", Float, nullable=True),
    Column("warning_upper", Float, nullable=True),
    Column("critical_lower", Float, nullable=True),
    Column("critical_upper", Float, nullable=True),
    Column("secondary_warning_lower", Float, nullable=True),
    Column("secondary_warning_upper", Float, nullable=True),
    Column("secondary_critical_lower", Float, nullable=True),
    Column("secondary_critical_upper", Float, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    sqlite_autoincrement=True,
)

sensor_readings = Table(
    "sensor_readings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "sensor_id",
        Integer,
        ForeignKey("sensors.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("value", Float, nullable=False),
    Column("secondary_value", Float, nullable=True),
    Column("unit", String(16), nullable=False),
    Column("battery_level", Float, nullable=True),
    Column("timestamp", DateTime, nullable=False),
    sqlite_autoincrement=True,
)

sensor_alerts = Table(
    "sensor_alerts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "sensor_id",
        Integer,
        ForeignKey("sensors.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("user_id", String(128), nullable=False, index=True),
    Column("alert_type", String(32), nullable=False),
    Column("message", String(512), nullable=False),
    Column("value", Float, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("acknowledged", Boolean, nullable=False, default=False),
    sqlite_autoincrement=True,
)

sensor_ownership_history = Table(
    "sensor_ownership_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("physical_id", String(64), nullable=False, index=True),
    Column("user_id", String(128), nullable=False),
    Column("sensor_id", Integer, nullable=False),
    Column("registered_at", DateTime, nullable=True),
    Column("released_at", DateTime, nullable=False),
)


def ensure_schema(engine: Engine) -> None:
    """Crea las tablas que falten. Seguro de llamar varias veces."""
    logger.info("[DB] Ensuring telemetry schema exists")
    metadata.create_all(engine)
