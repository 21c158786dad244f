"""Fixtures compartidos de la suite.

El store es SQLite en archivo (tmp_path): los writes corren en threads
de asyncio.to_thread y una base :memory: no se comparte entre conexiones.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import pytest

from common.config import MQTTSettings, PipelineSettings, Settings
from common.db import create_db_engine
from telemetry_ingest.domain import (
    ChannelThresholds,
    SensorType,
    ThresholdBand,
    ThresholdConfig,
)
from telemetry_ingest.infrastructure.persistence import SqlSensorRepository, ensure_schema
from telemetry_ingest.ingest import SensorRegistry, SensorResolver
from telemetry_ingest.mqtt import IngestTransport, MessageHandler

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """Timestamp de ingesta relativo a T0."""
    return T0 + timedelta(seconds=seconds)


def thresholds(
    warning: tuple = (None, None),
    critical: tuple = (None, None),
    secondary: Optional[tuple] = None,
) -> ThresholdConfig:
    """thresholds(warning=(lower, upper), critical=(lower, upper))."""
    config_secondary = None
    if secondary is not None:
        sec_warning, sec_critical = secondary
        config_secondary = ChannelThresholds(
            warning=ThresholdBand(*sec_warning),
            critical=ThresholdBand(*sec_critical),
        )
    return ThresholdConfig(
        primary=ChannelThresholds(
            warning=ThresholdBand(*warning),
            critical=ThresholdBand(*critical),
        ),
        secondary=config_secondary,
    )


class FakeTransport(IngestTransport):
    """Transporte en memoria: el test entrega mensajes con deliver()."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.fail_with = fail_with
        self.handler: Optional[MessageHandler] = None
        self.started = False
        self.stopped = False
        self._connected = False

    def start(self, handler: MessageHandler) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.handler = handler
        self.started = True
        self._connected = True

    def stop(self) -> None:
        self.stopped = True
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def stats(self) -> dict:
        return {"fake": True, "connected": self._connected}

    def deliver(self, topic: str, payload, received_at: Optional[datetime] = None) -> None:
        assert self.handler is not None, "transport not started"
        self.handler(topic, payload, received_at or datetime.now(timezone.utc))


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    eng = create_db_engine(f"sqlite:///{tmp_path / 'telemetry.db'}")
    ensure_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def repository(engine) -> SqlSensorRepository:
    return SqlSensorRepository(engine)


@pytest.fixture
def resolver(repository) -> SensorResolver:
    return SensorResolver(repository, ttl_seconds=300, max_size=100)


@pytest.fixture
def registry(repository, resolver) -> SensorRegistry:
    return SensorRegistry(repository, resolver)


@pytest.fixture
def pipeline_settings() -> PipelineSettings:
    """Settings rápidos: 2 shards, reintentos en milisegundos."""
    return PipelineSettings(
        num_workers=2,
        queue_size=100,
        store_timeout_seconds=2.0,
        retry_max_attempts=3,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        retry_queue_size=50,
        sensor_map_ttl_seconds=300,
        sensor_map_max_size=100,
    )


@pytest.fixture
def mqtt_settings() -> MQTTSettings:
    return MQTTSettings(
        broker_host="broker.test",
        broker_port=8883,
        username="svc-ingest",
        password="secret",
        tls_enabled=True,
        client_id="telemetry-test",
        topic="sensors/+/data",
        qos=1,
        reconnect_delay_seconds=5.0,
        max_reconnect_attempts=None,
        connect_timeout_seconds=0.5,
    )


@pytest.fixture
def settings(tmp_path, mqtt_settings, pipeline_settings) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'telemetry.db'}",
        mqtt=mqtt_settings,
        pipeline=pipeline_settings,
        redis_url=None,
        staleness_window_seconds=3600,
        log_level="INFO",
        api_key=None,
    )


@pytest.fixture
def provision(repository, registry) -> Callable:
    """Da de alta un id físico en el catálogo y lo registra a una cuenta."""

    def _provision(
        physical_id: str,
        sensor_type: SensorType = SensorType.TEMPERATURE,
        config: Optional[ThresholdConfig] = None,
        user_id: str = "user-a",
        name: Optional[str] = None,
        catalog: bool = True,
    ):
        if catalog:
            repository.add_available_sensor(physical_id, sensor_type)
        return registry.register_sensor(
            user_id,
            physical_id,
            name or f"Sensor {physical_id}",
            config or ThresholdConfig(),
            now=T0 - timedelta(days=1),
        ).sensor

    return _provision
