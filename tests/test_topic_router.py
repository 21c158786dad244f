"""Tests del router de topics y validación de payloads.

Ejecutar:
    pytest tests/test_topic_router.py -v
"""

import json
from datetime import datetime, timezone

import pytest

from telemetry_ingest.mqtt import TopicRouter, extract_device_id, validate_telemetry_payload


@pytest.fixture
def router() -> TopicRouter:
    return TopicRouter()


# =============================================================================
# TOPIC
# =============================================================================

class TestTopicParsing:
    """Solo sensors/<id>/data produce un mensaje."""

    @pytest.mark.parametrize(
        "topic",
        [
            "foo/bar",
            "sensors/X/data/extra",
            "sensors/X/status",
            "devices/X/data",
            "sensors//data",
            "sensors/X",
            "",
        ],
    )
    def test_foreign_topics_dropped(self, router, topic):
        assert router.route(topic, b'{"value": 1}') is None
        assert router.dropped_topic == 1
        assert router.routed == 0

    def test_extract_device_id(self):
        assert extract_device_id("sensors/SG-2024-000123/data") == "SG-2024-000123"
        assert extract_device_id("sensors/SG-2024-000123/data/") is None

    def test_routes_valid_message(self, router):
        received_at = datetime(2024, 5, 1, tzinfo=timezone.utc)

        message = router.route(
            "sensors/BC9740FFFE10D33A/data",
            b'{"value": 21.5, "battery": 90, "unit": "\xc2\xb0C"}',
            received_at,
        )

        assert message is not None
        assert message.device_id == "BC9740FFFE10D33A"
        assert message.value == 21.5
        assert message.battery == 90
        assert message.unit == "°C"
        assert message.received_at == received_at
        assert router.stats == {"routed": 1, "dropped_topic": 0, "dropped_payload": 0}

    def test_received_at_defaults_to_now_utc(self, router):
        message = router.route("sensors/A/data", '{"value": 1}')

        assert message.received_at.tzinfo is not None


# =============================================================================
# PAYLOAD
# =============================================================================

class TestPayloadValidation:
    """Payloads inválidos se descartan sin excepción."""

    @pytest.mark.parametrize(
        "payload",
        [
            b'{"battery": 90}',
            b"not json",
            b"[1, 2, 3]",
            b'{"value": "35"}',
            b'{"value": null}',
            b'{"value": true}',
            b"",
        ],
    )
    def test_invalid_payload_dropped(self, router, payload):
        assert router.route("sensors/A/data", payload) is None
        assert router.dropped_payload == 1

    def test_missing_value_error(self):
        result = validate_telemetry_payload({"battery": 90})

        assert result.valid is False
        assert "value" in result.error

    def test_nan_and_infinite_rejected(self):
        assert validate_telemetry_payload({"value": float("nan")}).valid is False
        assert validate_telemetry_payload({"value": float("inf")}).valid is False

    def test_value_out_of_range(self):
        result = validate_telemetry_payload({"value": 1e15})

        assert result.valid is False
        assert "range" in result.error.lower()

    def test_invalid_battery_is_ignored_with_warning(self):
        result = validate_telemetry_payload({"value": 3, "battery": 150})

        assert result.valid is True
        assert result.payload.battery is None
        assert "battery" in result.warnings[0]

    def test_secondary_channel_kept_as_extra(self, router):
        payload = json.dumps({"value": 812, "humidity": 44.5, "battery": 97, "label": "x"})

        message = router.route("sensors/CO2A9740FFFE10C33D/data", payload)

        assert message.channel_value("humidity") == 44.5
        assert "label" not in message.extras
        assert message.channel_value(None) is None

    def test_idempotency_fields(self):
        result = validate_telemetry_payload({"value": 1, "msgId": " abc ", "seq": "12"})

        assert result.payload.msg_id == "abc"
        assert result.payload.seq == 12
