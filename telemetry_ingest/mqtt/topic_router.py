"""Router de topics MQTT.

Demultiplexa mensajes por topic (sensors/<device-id>/data), extrae el
identificador físico del dispositivo y valida el payload.

Topics ajenos y payloads inválidos se loguean y se descartan; nunca se
propaga una excepción hacia la conexión.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Union

import orjson

from ..domain import ParsedMessage
from .validators import validate_telemetry_payload

logger = logging.getLogger(__name__)

TOPIC_PREFIX = "sensors"
TOPIC_SUFFIX = "data"
SUBSCRIPTION_TOPIC = f"{TOPIC_PREFIX}/+/{TOPIC_SUFFIX}"


def extract_device_id(topic: str) -> Optional[str]:
    """Extrae <device-id> de sensors/<device-id>/data.

    Returns:
        device_id, o None si el topic no tiene exactamente esa forma
    """
    if not topic:
        return None
    parts = topic.split("/")
    if len(parts) != 3:
        return None
    prefix, device_id, suffix = parts
    if prefix != TOPIC_PREFIX or suffix != TOPIC_SUFFIX:
        return None
    if not device_id.strip():
        return None
    return device_id


class TopicRouter:
    """Convierte (topic, payload crudo) en ParsedMessage o lo descarta."""

    def __init__(self) -> None:
        self.dropped_topic = 0
        self.dropped_payload = 0
        self.routed = 0

    def route(
        self,
        topic: str,
        payload: Union[bytes, str],
        received_at: Optional[datetime] = None,
    ) -> Optional[ParsedMessage]:
        if received_at is None:
            received_at = datetime.now(timezone.utc)

        device_id = extract_device_id(topic)
        if device_id is None:
            self.dropped_topic += 1
            logger.warning("[ROUTER] Discarded message on foreign topic=%s", topic)
            return None

        try:
            data = orjson.loads(payload)
        except orjson.JSONDecodeError as e:
            self.dropped_payload += 1
            logger.warning("[ROUTER] Invalid JSON device=%s err=%s", device_id, e)
            return None

        validation = validate_telemetry_payload(data)
        if not validation.valid:
            self.dropped_payload += 1
            logger.warning(
                "[ROUTER] Validation failed device=%s err=%s",
                device_id,
                validation.error,
            )
            return None

        for warn in validation.warnings:
            logger.warning("[ROUTER] device=%s %s", device_id, warn)

        body = validation.payload
        self.routed += 1
        return ParsedMessage(
            device_id=device_id,
            value=body.value,
            received_at=received_at,
            battery=body.battery,
            unit=body.unit,
            extras=body.numeric_extras,
            msg_id=body.msg_id,
            sequence=body.seq,
            topic=topic,
        )

    @property
    def stats(self) -> dict:
        return {
            "routed": self.routed,
            "dropped_topic": self.dropped_topic,
            "dropped_payload": self.dropped_payload,
        }
