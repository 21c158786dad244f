"""Modelos de dominio de la ingesta de telemetría.

Dataclasses inmutables que viajan entre router, resolver, writer y
evaluador de estado. No dependen del store ni del transporte.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SensorType(str, Enum):
    """Tipos de sensor soportados. Los compuestos miden dos canales."""

    TEMPERATURE = "temperature"
    WEIGHT = "weight"
    MOISTURE = "moisture"
    FLOW = "flow"
    IR = "ir"
    TEMPERATURE_HUMIDITY = "temperature_humidity"
    CO2_HUMIDITY = "co2_humidity"
    WEIGHT_TEMPERATURE = "weight_temperature"
    FLOW_WEIGHT = "flow_weight"


class SensorStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    OFFLINE = "offline"
    PENDING = "pending"


# Solo los estados que produce la evaluación por mensaje tienen severidad.
SEVERITY: Dict[SensorStatus, int] = {
    SensorStatus.OK: 0,
    SensorStatus.WARNING: 1,
    SensorStatus.CRITICAL: 2,
}


@dataclass(frozen=True)
class ChannelSpec:
    """Canales de medición de un tipo de sensor."""

    primary_unit: str
    secondary_field: Optional[str] = None
    secondary_unit: Optional[str] = None

    @property
    def is_composite(self) -> bool:
        return self.secondary_field is not None


CHANNELS: Dict[SensorType, ChannelSpec] = {
    SensorType.TEMPERATURE: ChannelSpec("°C"),
    SensorType.WEIGHT: ChannelSpec("kg"),
    SensorType.MOISTURE: ChannelSpec("%"),
    SensorType.FLOW: ChannelSpec("cm"),
    SensorType.IR: ChannelSpec("cm"),
    SensorType.TEMPERATURE_HUMIDITY: ChannelSpec("°C", "humidity", "%"),
    SensorType.CO2_HUMIDITY: ChannelSpec("ppm", "humidity", "%"),
    SensorType.WEIGHT_TEMPERATURE: ChannelSpec("kg", "temperature", "°C"),
    SensorType.FLOW_WEIGHT: ChannelSpec("cm", "weight", "kg"),
}


@dataclass(frozen=True)
class ThresholdBand:
    """Par (lower?, upper?) donde empieza un nivel de severidad.

    Sin ningún límite la banda nunca dispara.
    """

    lower: Optional[float] = None
    upper: Optional[float] = None

    @property
    def is_set(self) -> bool:
        return self.lower is not None or self.upper is not None


@dataclass(frozen=True)
class ChannelThresholds:
    warning: ThresholdBand = field(default_factory=ThresholdBand)
    critical: ThresholdBand = field(default_factory=ThresholdBand)

    def validate(self, channel: str = "primary") -> List[str]:
        """Reporta configuraciones inconsistentes (no las rechaza)."""
        problems: List[str] = []
        for name, band in (("warning", self.warning), ("critical", self.critical)):
            if band.lower is not None and band.upper is not None and band.lower > band.upper:
                problems.append(
                    f"{channel}.{name}: lower ({band.lower}) is above upper ({band.upper})"
                )

        w, c = self.warning, self.critical
        if w.lower is not None and c.lower is not None and c.lower > w.lower:
            problems.append(
                f"{channel}: critical lower ({c.lower}) is tighter than warning lower ({w.lower})"
            )
        if w.upper is not None and c.upper is not None and c.upper < w.upper:
            problems.append(
                f"{channel}: critical upper ({c.upper}) is tighter than warning upper ({w.upper})"
            )
        return problems


@dataclass(frozen=True)
class ThresholdConfig:
    primary: ChannelThresholds = field(default_factory=ChannelThresholds)
    secondary: Optional[ChannelThresholds] = None

    def validate(self) -> List[str]:
        problems = self.primary.validate("primary")
        if self.secondary is not None:
            problems.extend(self.secondary.validate("secondary"))
        return problems


@dataclass(frozen=True)
class SensorRef:
    """Registro de sensor resuelto: clave de storage + configuración actual."""

    sensor_id: int
    physical_id: str
    user_id: str
    name: str
    sensor_type: SensorType
    unit: str
    thresholds: ThresholdConfig
    secondary_unit: Optional[str] = None
    building_id: Optional[str] = None

    @property
    def channels(self) -> ChannelSpec:
        return CHANNELS[self.sensor_type]


@dataclass(frozen=True)
class ParsedMessage:
    """Mensaje de telemetría ya validado, listo para resolver."""

    device_id: str
    value: float
    received_at: datetime
    battery: Optional[float] = None
    unit: Optional[str] = None
    # Campos numéricos extra del payload (canal secundario, etc.)
    extras: Dict[str, float] = field(default_factory=dict)
    msg_id: Optional[str] = None
    sequence: Optional[int] = None
    topic: str = ""

    def channel_value(self, field_name: Optional[str]) -> Optional[float]:
        if field_name is None:
            return None
        return self.extras.get(field_name)


@dataclass(frozen=True)
class SnapshotState:
    """Estado del snapshot del sensor justo antes de aplicar una lectura."""

    status: SensorStatus
    battery_level: Optional[float]
    last_communication: Optional[datetime]


@dataclass(frozen=True)
class NewAlert:
    alert_type: str
    message: str
    value: Optional[float] = None


@dataclass(frozen=True)
class ReadingWrite:
    """Efectos de una lectura aceptada: fila de historial + snapshot."""

    sensor_id: int
    value: float
    timestamp: datetime
    status: SensorStatus
    unit: str
    secondary_value: Optional[float] = None
    battery_level: Optional[float] = None
    # Identidad esperada del registro; si no coincide la fila es de otro dueño
    physical_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class WriteOutcome:
    found: bool
    snapshot_applied: bool = False
    reading_id: Optional[int] = None
    previous: Optional[SnapshotState] = None
    alerts: List[NewAlert] = field(default_factory=list)


class IngestOutcome(str, Enum):
    ACCEPTED = "accepted"
    STALE = "stale"
    DROPPED_TOPIC = "dropped_topic"
    DROPPED_PAYLOAD = "dropped_payload"
    UNRESOLVED = "unresolved"
    DROPPED_BACKPRESSURE = "dropped_backpressure"
    DUPLICATE = "duplicate"
    TIMEOUT = "timeout"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


@dataclass(frozen=True)
class IngestResult:
    outcome: IngestOutcome
    device_id: Optional[str] = None
    sensor_id: Optional[int] = None
    status: Optional[SensorStatus] = None
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
