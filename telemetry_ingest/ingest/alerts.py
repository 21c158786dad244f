"""Reglas de alertas del pipeline de ingesta.

Una alerta se genera cuando una lectura aceptada:
- lleva el estado del sensor a warning/critical desde otro estado
- baja la batería a (o por debajo de) BATTERY_LOW_THRESHOLD desde arriba

Las alertas se escriben en la misma transacción que el snapshot.
"""

from __future__ import annotations

from typing import List, Optional

from ..classification import StatusEvaluation
from ..domain import NewAlert, SensorRef, SensorStatus, SnapshotState

ALERT_TYPE_BATTERY = "battery"

_COMPACT_UNITS = ("%", "°C")


def _fmt(value: float, unit: Optional[str]) -> str:
    if not unit:
        return f"{value:g}"
    sep = "" if unit in _COMPACT_UNITS else " "
    return f"{value:g}{sep}{unit}"


def status_alert_message(sensor: SensorRef, evaluation: StatusEvaluation) -> str:
    """Mensaje legible para una transición a warning/critical."""
    trigger = evaluation.trigger
    unit = sensor.unit if trigger.channel == "primary" else sensor.secondary_unit
    label = "Critical value" if evaluation.status == SensorStatus.CRITICAL else "Warning"
    channel = "" if trigger.channel == "primary" else f" ({sensor.channels.secondary_field})"

    if trigger.bound is None:
        return f"{label} on {sensor.name}{channel}: {_fmt(trigger.value, unit)}"

    side, limit = trigger.bound
    direction = "above upper" if side == "upper" else "below lower"
    return (
        f"{label} on {sensor.name}{channel}: {_fmt(trigger.value, unit)} "
        f"is {direction} limit {_fmt(limit, unit)}"
    )


class AlertRules:
    """Decide qué alertas produce una lectura aceptada."""

    def __init__(self, battery_low_threshold: float = 20.0):
        self.battery_low_threshold = battery_low_threshold

    def build(
        self,
        sensor: SensorRef,
        evaluation: StatusEvaluation,
        battery: Optional[float],
        previous: SnapshotState,
    ) -> List[NewAlert]:
        alerts: List[NewAlert] = []

        new_status = evaluation.status
        if new_status in (SensorStatus.WARNING, SensorStatus.CRITICAL) and previous.status != new_status:
            alerts.append(
                NewAlert(
                    alert_type=new_status.value,
                    message=status_alert_message(sensor, evaluation),
                    value=evaluation.trigger.value,
                )
            )

        if battery is not None and battery <= self.battery_low_threshold:
            was_low = (
                previous.battery_level is not None
                and previous.battery_level <= self.battery_low_threshold
            )
            if not was_low:
                alerts.append(
                    NewAlert(
                        alert_type=ALERT_TYPE_BATTERY,
                        message=f"Low battery on {sensor.name}: {battery:g}%",
                        value=battery,
                    )
                )

        return alerts
