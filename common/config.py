from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from telemetry_ingest.errors import ConfigurationError


def _default_env_file() -> str:
    # El .env vive en la raíz del repo, junto a pyproject.toml.
    repo_root = Path(__file__).resolve().parents[1]
    return str(repo_root / ".env")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes", "on")


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got: {raw!r}")


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got: {raw!r}")


@dataclass(frozen=True)
class MQTTSettings:
    broker_host: str
    broker_port: int
    username: Optional[str]
    password: Optional[str]
    tls_enabled: bool
    client_id: str
    topic: str
    qos: int
    reconnect_delay_seconds: float
    # None = reconexión infinita (comportamiento por defecto)
    max_reconnect_attempts: Optional[int]
    connect_timeout_seconds: float = 10.0
    keepalive: int = 60

    def validate(self) -> None:
        """Valida credenciales y parámetros del broker.

        Credenciales mal formadas son un error fatal de arranque: el proceso
        no debe quedarse corriendo desconectado en silencio.
        """
        if not self.broker_host or not self.broker_host.strip():
            raise ConfigurationError("MQTT_BROKER_HOST is required")
        if not (0 < self.broker_port < 65536):
            raise ConfigurationError(f"MQTT_BROKER_PORT out of range: {self.broker_port}")
        if bool(self.username) != bool(self.password):
            raise ConfigurationError(
                "MQTT_USERNAME and MQTT_PASSWORD must be set together"
            )
        if self.qos not in (0, 1, 2):
            raise ConfigurationError(f"MQTT_QOS must be 0, 1 or 2, got: {self.qos}")
        if self.reconnect_delay_seconds <= 0:
            raise ConfigurationError("MQTT_RECONNECT_DELAY_SECONDS must be > 0")
        if self.max_reconnect_attempts is not None and self.max_reconnect_attempts < 1:
            raise ConfigurationError("MQTT_MAX_RECONNECT_ATTEMPTS must be >= 1 when set")


@dataclass(frozen=True)
class PipelineSettings:
    num_workers: int = 4
    queue_size: int = 1000
    store_timeout_seconds: float = 5.0
    retry_max_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 10.0
    retry_queue_size: int = 500
    sensor_map_ttl_seconds: int = 300
    sensor_map_max_size: int = 10000
    dedup_enabled: bool = False
    dedup_ttl_seconds: int = 300
    battery_low_threshold: float = 20.0


@dataclass(frozen=True)
class Settings:
    database_url: str
    mqtt: MQTTSettings
    pipeline: PipelineSettings
    redis_url: Optional[str]
    staleness_window_seconds: int
    log_level: str
    api_key: Optional[str]


def get_settings() -> Settings:
    # Carga el env file (si existe) sin pisar variables reales del entorno.
    env_file = os.getenv("TELEMETRY_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    max_attempts_raw = os.getenv("MQTT_MAX_RECONNECT_ATTEMPTS", "").strip()
    max_reconnect_attempts = (
        _env_int("MQTT_MAX_RECONNECT_ATTEMPTS", "0") if max_attempts_raw else None
    )

    mqtt = MQTTSettings(
        broker_host=os.getenv("MQTT_BROKER_HOST", "localhost"),
        broker_port=_env_int("MQTT_BROKER_PORT", "8883"),
        username=os.getenv("MQTT_USERNAME") or None,
        password=os.getenv("MQTT_PASSWORD") or None,
        tls_enabled=_env_bool("MQTT_TLS_ENABLED", "true"),
        client_id=os.getenv("MQTT_CLIENT_ID", "telemetry-ingest"),
        topic=os.getenv("MQTT_TOPIC", "sensors/+/data"),
        qos=_env_int("MQTT_QOS", "1"),
        reconnect_delay_seconds=_env_float("MQTT_RECONNECT_DELAY_SECONDS", "5"),
        max_reconnect_attempts=max_reconnect_attempts,
    )
    pipeline = PipelineSettings(
        num_workers=_env_int("INGEST_NUM_WORKERS", "4"),
        queue_size=_env_int("INGEST_QUEUE_SIZE", "1000"),
        store_timeout_seconds=_env_float("INGEST_STORE_TIMEOUT_SECONDS", "5"),
        retry_max_attempts=_env_int("INGEST_RETRY_MAX_ATTEMPTS", "3"),
        retry_base_delay=_env_float("INGEST_RETRY_BASE_DELAY", "0.5"),
        retry_max_delay=_env_float("INGEST_RETRY_MAX_DELAY", "10"),
        retry_queue_size=_env_int("INGEST_RETRY_QUEUE_SIZE", "500"),
        sensor_map_ttl_seconds=_env_int("SENSOR_MAP_TTL_SECONDS", "300"),
        sensor_map_max_size=_env_int("SENSOR_MAP_MAX_SIZE", "10000"),
        dedup_enabled=_env_bool("INGEST_DEDUP_ENABLED", "false"),
        dedup_ttl_seconds=_env_int("INGEST_DEDUP_TTL_SECONDS", "300"),
        battery_low_threshold=_env_float("BATTERY_LOW_THRESHOLD", "20"),
    )
    if pipeline.num_workers < 1:
        raise ConfigurationError("INGEST_NUM_WORKERS must be >= 1")

    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./telemetry.db"),
        mqtt=mqtt,
        pipeline=pipeline,
        redis_url=os.getenv("REDIS_URL") or None,
        staleness_window_seconds=_env_int("STALENESS_WINDOW_SECONDS", "3600"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        api_key=os.getenv("INGEST_API_KEY") or None,
    )
