"""Endpoints de sensores: estado actual y registro/liberación."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..auth import require_api_key
from ..errors import SensorAlreadyRegistered, SensorNotAvailable, SensorNotOwned
from ..infrastructure.persistence import SqlSensorRepository
from ..ingest import SensorRegistry
from ..schemas import (
    OwnershipRecordOut,
    ReadingOut,
    RegisterSensorIn,
    RegisterSensorOut,
    ReleaseSensorOut,
    SensorStatusOut,
    ThresholdsIn,
    ThresholdUpdateOut,
)
from .deps import get_registry, get_repository

router = APIRouter(tags=["sensors"], dependencies=[Depends(require_api_key)])


@router.get("/sensors/{physical_id}/status", response_model=SensorStatusOut)
def get_sensor_status(
    physical_id: str,
    readings: int = Query(default=10, ge=0, le=500),
    repository: SqlSensorRepository = Depends(get_repository),
):
    """Snapshot actual del sensor activo para un id físico.

    Incluye las últimas ``readings`` lecturas, más reciente primero.
    """
    matches = repository.find_active_by_physical_id(physical_id)
    if not matches:
        raise HTTPException(status_code=404, detail="No active sensor for physical id")

    ref = matches[0]
    row = repository.get_sensor(ref.sensor_id)
    if row is None:
        raise HTTPException(status_code=404, detail="No active sensor for physical id")

    recent = repository.list_readings(ref.sensor_id, limit=readings) if readings else []
    return SensorStatusOut(
        sensor_id=row["id"],
        physical_id=row["physical_id"],
        name=row["name"],
        sensor_type=row["sensor_type"],
        status=row["status"],
        current_value=row["current_value"],
        secondary_value=row["secondary_value"],
        unit=row["unit"],
        secondary_unit=row["secondary_unit"],
        battery_level=row["battery_level"],
        last_communication=row["last_communication"],
        recent_readings=[ReadingOut(**r) for r in recent],
    )


@router.get("/sensors/{physical_id}/history", response_model=List[OwnershipRecordOut])
def get_ownership_history(
    physical_id: str,
    registry: SensorRegistry = Depends(get_registry),
):
    return [OwnershipRecordOut(**r) for r in registry.ownership_history(physical_id)]


@router.post(
    "/sensors/register",
    response_model=RegisterSensorOut,
    status_code=status.HTTP_201_CREATED,
)
def register_sensor(
    body: RegisterSensorIn,
    registry: SensorRegistry = Depends(get_registry),
):
    try:
        registration = registry.register_sensor(
            body.user_id,
            body.physical_id,
            body.name,
            body.thresholds.to_domain(),
            building_id=body.building_id,
            location=body.location,
        )
    except SensorNotAvailable as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SensorAlreadyRegistered as e:
        raise HTTPException(status_code=409, detail=str(e))

    sensor = registration.sensor
    return RegisterSensorOut(
        sensor_id=sensor.sensor_id,
        physical_id=sensor.physical_id,
        user_id=sensor.user_id,
        sensor_type=sensor.sensor_type.value,
        unit=sensor.unit,
        secondary_unit=sensor.secondary_unit,
        status="pending",
        threshold_warnings=registration.threshold_warnings,
    )


@router.put("/sensors/{sensor_id}/thresholds", response_model=ThresholdUpdateOut)
def update_thresholds(
    sensor_id: int,
    body: ThresholdsIn,
    user_id: str = Query(..., min_length=1),
    registry: SensorRegistry = Depends(get_registry),
):
    try:
        warnings = registry.update_thresholds(user_id, sensor_id, body.to_domain())
    except SensorNotOwned as e:
        raise HTTPException(status_code=404, detail=str(e))
    return ThresholdUpdateOut(sensor_id=sensor_id, threshold_warnings=warnings)


@router.delete("/sensors/{sensor_id}", response_model=ReleaseSensorOut)
def release_sensor(
    sensor_id: int,
    user_id: str = Query(..., min_length=1),
    registry: SensorRegistry = Depends(get_registry),
):
    try:
        physical_id = registry.release_sensor(user_id, sensor_id)
    except SensorNotOwned as e:
        raise HTTPException(status_code=404, detail=str(e))
    return ReleaseSensorOut(sensor_id=sensor_id, physical_id=physical_id)
