"""Simulador de dispositivo: publica mediciones en sensors/<id>/data.

Sirve para probar la ingesta de punta a punta contra un broker real.
Usa la misma configuración MQTT que el servicio (MQTT_BROKER_HOST, ...).

Uso:
    python -m jobs.simulate_sensor --device-id SG-2024-000123 --type temperature
    python -m jobs.simulate_sensor --device-id CO2A9740FFFE10C33D --type co2_humidity --interval 10
"""

from __future__ import annotations

import argparse
import logging
import random
import time
from typing import Any, Dict, Optional, Tuple

import orjson
import paho.mqtt.client as mqtt

from common.config import get_settings
from common.logging_config import setup_logging
from telemetry_ingest.domain import CHANNELS, SensorType

logger = logging.getLogger(__name__)

# Rangos realistas por canal (min, max, decimales)
_RANGES: Dict[str, Tuple[float, float, int]] = {
    "°C": (15.0, 30.0, 2),
    "kg": (0.0, 250.0, 1),
    "%": (30.0, 70.0, 1),
    "cm": (0.0, 120.0, 1),
    "ppm": (400.0, 2000.0, 0),
}


def _sample(unit: str, rng: random.Random) -> float:
    low, high, digits = _RANGES.get(unit, (0.0, 100.0, 2))
    return round(low + rng.random() * (high - low), digits)


def build_payload(
    sensor_type: SensorType,
    rng: Optional[random.Random] = None,
    seq: Optional[int] = None,
) -> Dict[str, Any]:
    """Payload de telemetría válido para ``sensor_type``."""
    rng = rng or random.Random()
    channels = CHANNELS[sensor_type]
    payload: Dict[str, Any] = {
        "value": _sample(channels.primary_unit, rng),
        "unit": channels.primary_unit,
        "battery": round(85 + rng.random() * 15, 1),
    }
    if channels.secondary_field is not None:
        payload[channels.secondary_field] = _sample(channels.secondary_unit or "", rng)
    if seq is not None:
        payload["seq"] = seq
    return payload


def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level)
    cfg = settings.mqtt
    cfg.validate()

    p = argparse.ArgumentParser(description="Publish simulated sensor telemetry")
    p.add_argument("--device-id", required=True)
    p.add_argument("--type", dest="sensor_type", default=SensorType.TEMPERATURE.value,
                   choices=[t.value for t in SensorType])
    p.add_argument("--interval", type=float, default=60.0, help="seconds between messages")
    p.add_argument("--count", type=int, default=0, help="messages to send (0 = forever)")
    args = p.parse_args()

    sensor_type = SensorType(args.sensor_type)
    topic = f"sensors/{args.device_id}/data"

    client = mqtt.Client(
        client_id=f"simulator-{args.device_id}-{int(time.time())}",
        protocol=mqtt.MQTTv311,
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
    )
    if cfg.username and cfg.password:
        client.username_pw_set(cfg.username, cfg.password)
    if cfg.tls_enabled:
        client.tls_set()

    logger.info("[SIM] Connecting to %s:%d device=%s type=%s", cfg.broker_host, cfg.broker_port,
                args.device_id, sensor_type.value)
    client.connect(cfg.broker_host, cfg.broker_port, keepalive=cfg.keepalive)
    client.loop_start()

    sent = 0
    try:
        while args.count == 0 or sent < args.count:
            payload = build_payload(sensor_type, seq=sent)
            info = client.publish(topic, orjson.dumps(payload), qos=cfg.qos)
            info.wait_for_publish(timeout=10)
            sent += 1
            logger.info("[SIM] Sent topic=%s payload=%s", topic, payload)
            if args.count == 0 or sent < args.count:
                time.sleep(args.interval)
    except KeyboardInterrupt:
        logger.info("[SIM] Interrupted after %d messages", sent)
    finally:
        client.loop_stop()
        client.disconnect()


if __name__ == "__main__":
    main()
