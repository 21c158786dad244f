"""Modelos de dominio compartidos por todo el pipeline."""

from .models import (
    CHANNELS,
    SEVERITY,
    ChannelSpec,
    ChannelThresholds,
    IngestOutcome,
    IngestResult,
    NewAlert,
    ParsedMessage,
    ReadingWrite,
    SensorRef,
    SensorStatus,
    SensorType,
    SnapshotState,
    ThresholdBand,
    ThresholdConfig,
    WriteOutcome,
)

__all__ = [
    "CHANNELS",
    "SEVERITY",
    "ChannelSpec",
    "ChannelThresholds",
    "IngestOutcome",
    "IngestResult",
    "NewAlert",
    "ParsedMessage",
    "ReadingWrite",
    "SensorRef",
    "SensorStatus",
    "SensorType",
    "SnapshotState",
    "ThresholdBand",
    "ThresholdConfig",
    "WriteOutcome",
]
