"""Reading Writer: persiste una lectura y refresca el snapshot.

Por cada lectura aceptada:
1. Extrae el canal secundario según el tipo de sensor
2. Evalúa el estado (mismo paso lógico que la escritura)
3. Append de la lectura + snapshot guardado por timestamp + alertas,
   todo en una sola transacción del repositorio

Síncrono: el pipeline lo ejecuta en asyncio.to_thread.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..classification import StatusEvaluation, evaluate_status
from ..domain import NewAlert, ParsedMessage, ReadingWrite, SensorRef, SnapshotState, WriteOutcome
from ..infrastructure.persistence import SensorRepository
from .alerts import AlertRules

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppliedReading:
    outcome: WriteOutcome
    evaluation: StatusEvaluation
    write: ReadingWrite


class ReadingWriter:
    def __init__(self, repository: SensorRepository, alert_rules: Optional[AlertRules] = None):
        self._repository = repository
        self._alert_rules = alert_rules or AlertRules()

    def build_write(self, sensor: SensorRef, message: ParsedMessage) -> tuple[ReadingWrite, StatusEvaluation]:
        """Calcula la fila a escribir y el estado derivado, sin tocar el store."""
        secondary_value = message.channel_value(sensor.channels.secondary_field)
        evaluation = evaluate_status(message.value, sensor.thresholds, secondary_value)
        write = ReadingWrite(
            sensor_id=sensor.sensor_id,
            value=message.value,
            timestamp=message.received_at,
            status=evaluation.status,
            unit=message.unit or sensor.unit,
            secondary_value=secondary_value,
            battery_level=message.battery,
            physical_id=sensor.physical_id,
            user_id=sensor.user_id,
        )
        return write, evaluation

    def write(self, sensor: SensorRef, message: ParsedMessage) -> AppliedReading:
        """Persiste la lectura.

        Raises:
            PersistenceError: fallo del store (reintentable)
        """
        write, evaluation = self.build_write(sensor, message)

        def build_alerts(previous: SnapshotState) -> List[NewAlert]:
            return self._alert_rules.build(sensor, evaluation, message.battery, previous)

        outcome = self._repository.apply_reading(write, build_alerts)

        if not outcome.found:
            logger.warning(
                "[WRITER] Sensor id=%d vanished or changed owner before write device=%s",
                sensor.sensor_id,
                message.device_id,
            )
        elif not outcome.snapshot_applied:
            logger.info(
                "[WRITER] Stale reading device=%s sensor_id=%d ts=%s; history appended, snapshot kept",
                message.device_id,
                sensor.sensor_id,
                message.received_at.isoformat(),
            )
        else:
            previous = outcome.previous
            if previous is not None and previous.status != evaluation.status:
                logger.info(
                    "[WRITER] Status change sensor_id=%d device=%s %s -> %s value=%s",
                    sensor.sensor_id,
                    message.device_id,
                    previous.status.value,
                    evaluation.status.value,
                    message.value,
                )
            for alert in outcome.alerts:
                logger.info(
                    "[WRITER] Alert sensor_id=%d type=%s msg=%s",
                    sensor.sensor_id,
                    alert.alert_type,
                    alert.message,
                )

        return AppliedReading(outcome=outcome, evaluation=evaluation, write=write)
