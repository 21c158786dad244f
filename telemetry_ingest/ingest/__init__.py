"""Pipeline de ingesta: resolución, escritura, estado y registro."""

from .alerts import AlertRules
from .pipeline import TelemetryIngestService, shard_for
from .reading_writer import AppliedReading, ReadingWriter
from .registry import Registration, SensorRegistry
from .sensor_resolver import SensorResolver

__all__ = [
    "AlertRules",
    "AppliedReading",
    "ReadingWriter",
    "Registration",
    "SensorRegistry",
    "SensorResolver",
    "TelemetryIngestService",
    "shard_for",
]
