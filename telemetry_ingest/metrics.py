"""Métricas Prometheus del servicio de ingesta.

Expuestas en GET /metrics. Los contadores son globales al proceso.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

MQTT_CONNECTED = Gauge(
    "telemetry_mqtt_connected",
    "MQTT subscriber connection status (1 connected, 0 disconnected)",
)
MQTT_RECONNECTS = Counter(
    "telemetry_mqtt_reconnects_total",
    "Successful MQTT reconnections after the first connect",
)
MESSAGES_TOTAL = Counter(
    "telemetry_ingest_messages_total",
    "Telemetry messages by pipeline outcome",
    ["outcome"],
)
PERSISTENCE_FAILURES = Counter(
    "telemetry_ingest_persistence_failures_total",
    "Readings dropped after store retries were exhausted",
)
RETRIES_TOTAL = Counter(
    "telemetry_ingest_retries_total",
    "Store write retry attempts",
)
PROCESSING_LATENCY = Histogram(
    "telemetry_ingest_processing_seconds",
    "Time from dequeue to store commit for accepted readings",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)
SENSORS_MARKED_OFFLINE = Counter(
    "telemetry_sensors_marked_offline_total",
    "Sensors moved to offline by the staleness sweep",
)
