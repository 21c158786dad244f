"""Transporte MQTT para la ingesta de telemetría.

Estructura modular:
- transport.py: interface IngestTransport
- connection.py: gestor de conexión (reconexión + re-suscripción)
- topic_router.py: sensors/<device-id>/data → ParsedMessage
- validators.py: schema del payload
- receiver_stats.py: contadores del receptor
"""

from .connection import MQTTConnectionManager
from .topic_router import SUBSCRIPTION_TOPIC, TopicRouter, extract_device_id
from .transport import IngestTransport, MessageHandler
from .validators import TelemetryPayload, ValidationResult, validate_telemetry_payload

__all__ = [
    "MQTTConnectionManager",
    "SUBSCRIPTION_TOPIC",
    "TopicRouter",
    "extract_device_id",
    "IngestTransport",
    "MessageHandler",
    "TelemetryPayload",
    "ValidationResult",
    "validate_telemetry_payload",
]
