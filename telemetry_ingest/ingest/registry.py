"""Registro y liberación de sensores físicos por cuenta.

Un id físico tiene como máximo un dueño activo. Registrar, liberar o
cambiar umbrales invalida la entrada del resolver para ese dispositivo,
así los mensajes siguientes se resuelven contra el registro nuevo.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..domain import SensorRef, ThresholdConfig
from ..infrastructure.persistence import SqlSensorRepository
from .sensor_resolver import SensorResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Registration:
    sensor: SensorRef
    # Problemas de orden en los umbrales; se reportan pero no bloquean
    threshold_warnings: List[str] = field(default_factory=list)


class SensorRegistry:
    def __init__(self, repository: SqlSensorRepository, resolver: Optional[SensorResolver] = None):
        self._repository = repository
        self._resolver = resolver

    def _check_thresholds(self, physical_id: str, thresholds: ThresholdConfig) -> List[str]:
        problems = thresholds.validate()
        for problem in problems:
            logger.warning("[REGISTRY] Inconsistent thresholds device=%s: %s", physical_id, problem)
        return problems

    def _invalidate(self, physical_id: str) -> None:
        if self._resolver is not None:
            self._resolver.invalidate(physical_id)

    def register_sensor(
        self,
        user_id: str,
        physical_id: str,
        name: str,
        thresholds: Optional[ThresholdConfig] = None,
        *,
        building_id: Optional[str] = None,
        location: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Registration:
        """Reclama ``physical_id`` para ``user_id``.

        Raises:
            SensorNotAvailable: el id no existe en el catálogo
            SensorAlreadyRegistered: el id ya tiene dueño
        """
        thresholds = thresholds or ThresholdConfig()
        warnings = self._check_thresholds(physical_id, thresholds)

        sensor = self._repository.register_sensor(
            user_id=user_id,
            physical_id=physical_id,
            name=name,
            thresholds=thresholds,
            now=now or datetime.now(timezone.utc),
            building_id=building_id,
            location=location,
        )
        self._invalidate(physical_id)
        logger.info(
            "[REGISTRY] Registered device=%s user=%s sensor_id=%d type=%s",
            physical_id,
            user_id,
            sensor.sensor_id,
            sensor.sensor_type.value,
        )
        return Registration(sensor=sensor, threshold_warnings=warnings)

    def release_sensor(self, user_id: str, sensor_id: int, *, now: Optional[datetime] = None) -> str:
        """Elimina el sensor de la cuenta y libera su id físico.

        Raises:
            SensorNotOwned: el sensor no existe o es de otra cuenta
        """
        physical_id = self._repository.release_sensor(
            user_id=user_id,
            sensor_id=sensor_id,
            now=now or datetime.now(timezone.utc),
        )
        self._invalidate(physical_id)
        logger.info(
            "[REGISTRY] Released device=%s user=%s sensor_id=%d",
            physical_id,
            user_id,
            sensor_id,
        )
        return physical_id

    def update_thresholds(
        self,
        user_id: str,
        sensor_id: int,
        thresholds: ThresholdConfig,
        *,
        now: Optional[datetime] = None,
    ) -> List[str]:
        physical_id = self._repository.update_thresholds(
            user_id=user_id,
            sensor_id=sensor_id,
            thresholds=thresholds,
            now=now or datetime.now(timezone.utc),
        )
        self._invalidate(physical_id)
        logger.info("[REGISTRY] Thresholds updated sensor_id=%d device=%s", sensor_id, physical_id)
        return self._check_thresholds(physical_id, thresholds)

    def ownership_history(self, physical_id: str) -> List[Dict[str, Any]]:
        return self._repository.ownership_history(physical_id)
