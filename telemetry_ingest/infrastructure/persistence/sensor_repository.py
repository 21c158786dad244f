"""Repositorio SQL de sensores, lecturas y propiedad.

Único punto del pipeline que toca el store. Todas las operaciones son
síncronas (SQLAlchemy); el pipeline las ejecuta en asyncio.to_thread.

Las fechas se guardan como UTC naive y se devuelven con tzinfo=UTC.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ...domain import (
    CHANNELS,
    ChannelThresholds,
    NewAlert,
    ReadingWrite,
    SensorRef,
    SensorStatus,
    SensorType,
    SnapshotState,
    ThresholdBand,
    ThresholdConfig,
    WriteOutcome,
)
from ...errors import (
    PersistenceError,
    SensorAlreadyRegistered,
    SensorNotAvailable,
    SensorNotOwned,
)
from .schema import (
    available_sensors,
    sensor_alerts,
    sensor_ownership_history,
    sensor_readings,
    sensors,
)

logger = logging.getLogger(__name__)

AlertBuilder = Callable[[SnapshotState], List[NewAlert]]


def _to_db(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _thresholds_to_columns(config: ThresholdConfig) -> Dict[str, Optional[float]]:
    secondary = config.secondary or ChannelThresholds()
    return {
        "warning_lower": config.primary.warning.lower,
        "warning_upper": config.primary.warning.upper,
        "critical_lower": config.primary.critical.lower,
        "critical_upper": config.primary.critical.upper,
        "secondary_warning_lower": secondary.warning.lower,
        "secondary_warning_upper": secondary.warning.upper,
        "secondary_critical_lower": secondary.critical.lower,
        "secondary_critical_upper": secondary.critical.upper,
    }


def _row_to_thresholds(row: Any) -> ThresholdConfig:
    primary = ChannelThresholds(
        warning=ThresholdBand(row["warning_lower"], row["warning_upper"]),
        critical=ThresholdBand(row["critical_lower"], row["critical_upper"]),
    )
    secondary = ChannelThresholds(
        warning=ThresholdBand(row["secondary_warning_lower"], row["secondary_warning_upper"]),
        critical=ThresholdBand(row["secondary_critical_lower"], row["secondary_critical_upper"]),
    )
    if not secondary.warning.is_set and not secondary.critical.is_set:
        return ThresholdConfig(primary=primary)
    return ThresholdConfig(primary=primary, secondary=secondary)


def _row_to_ref(row: Any) -> SensorRef:
    return SensorRef(
        sensor_id=int(row["id"]),
        physical_id=str(row["physical_id"]),
        user_id=str(row["user_id"]),
        name=str(row["name"]),
        sensor_type=SensorType(row["sensor_type"]),
        unit=str(row["unit"]),
        thresholds=_row_to_thresholds(row),
        secondary_unit=row["secondary_unit"],
        building_id=row["building_id"],
    )


def _row_to_dict(row: Any) -> Dict[str, Any]:
    data = dict(row)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = _from_db(value)
    return data


class SensorRepository(Protocol):
    """Interfaz del store que consume el pipeline de ingesta."""

    def find_active_by_physical_id(self, physical_id: str) -> List[SensorRef]:
        """Registros activos cuyo id físico es ``physical_id``, ordenados por id."""
        ...

    def apply_reading(
        self,
        write: ReadingWrite,
        build_alerts: Optional[AlertBuilder] = None,
    ) -> WriteOutcome:
        """Append de la lectura + snapshot + estado en una transacción."""
        ...


class SqlSensorRepository:
    """Implementación SQLAlchemy del store de telemetría."""

    def __init__(self, engine: Engine):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    # ------------------------------------------------------------------
    # Ingesta
    # ------------------------------------------------------------------

    def find_active_by_physical_id(self, physical_id: str) -> List[SensorRef]:
        try:
            with self._engine.connect() as conn:
                rows = (
                    conn.execute(
                        select(sensors)
                        .where(sensors.c.physical_id == physical_id)
                        .order_by(sensors.c.id.asc())
                    )
                    .mappings()
                    .all()
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"lookup physical_id={physical_id}: {e}") from e
        return [_row_to_ref(r) for r in rows]

    def apply_reading(
        self,
        write: ReadingWrite,
        build_alerts: Optional[AlertBuilder] = None,
    ) -> WriteOutcome:
        """Persiste una lectura aceptada.

        La fila de historial se agrega siempre. El snapshot (valores,
        batería, última comunicación, estado) solo se actualiza si el
        timestamp almacenado es NULL o <= al de la lectura entrante.
        """
        ts = _to_db(write.timestamp)
        alerts: List[NewAlert] = []

        try:
            with self._engine.begin() as conn:
                row = (
                    conn.execute(
                        select(
                            sensors.c.physical_id,
                            sensors.c.user_id,
                            sensors.c.status,
                            sensors.c.battery_level,
                            sensors.c.last_communication,
                        ).where(sensors.c.id == write.sensor_id)
                    )
                    .mappings()
                    .first()
                )
                if row is None:
                    return WriteOutcome(found=False)
                if (write.physical_id is not None and row["physical_id"] != write.physical_id) or (
                    write.user_id is not None and row["user_id"] != write.user_id
                ):
                    logger.warning(
                        "[DB] Sensor id=%d now belongs to physical_id=%s user=%s; write skipped",
                        write.sensor_id,
                        row["physical_id"],
                        row["user_id"],
                    )
                    return WriteOutcome(found=False)

                previous = SnapshotState(
                    status=SensorStatus(row["status"]),
                    battery_level=row["battery_level"],
                    last_communication=_from_db(row["last_communication"]),
                )

                inserted = conn.execute(
                    insert(sensor_readings).values(
                        sensor_id=write.sensor_id,
                        value=write.value,
                        secondary_value=write.secondary_value,
                        unit=write.unit,
                        battery_level=write.battery_level,
                        timestamp=ts,
                    )
                )
                reading_id = inserted.inserted_primary_key[0]

                values: Dict[str, Any] = {
                    "current_value": write.value,
                    "last_communication": ts,
                    "status": write.status.value,
                    "updated_at": ts,
                }
                if write.secondary_value is not None:
                    values["secondary_value"] = write.secondary_value
                if write.battery_level is not None:
                    values["battery_level"] = write.battery_level

                result = conn.execute(
                    update(sensors)
                    .where(sensors.c.id == write.sensor_id)
                    .where(
                        or_(
                            sensors.c.last_communication.is_(None),
                            sensors.c.last_communication <= ts,
                        )
                    )
                    .values(**values)
                )
                applied = result.rowcount == 1

                if applied and build_alerts is not None:
                    alerts = list(build_alerts(previous))
                    for alert in alerts:
                        conn.execute(
                            insert(sensor_alerts).values(
                                sensor_id=write.sensor_id,
                                user_id=row["user_id"],
                                alert_type=alert.alert_type,
                                message=alert.message,
                                value=alert.value,
                                created_at=ts,
                                acknowledged=False,
                            )
                        )
        except SQLAlchemyError as e:
            raise PersistenceError(f"apply_reading sensor={write.sensor_id}: {e}") from e

        return WriteOutcome(
            found=True,
            snapshot_applied=applied,
            reading_id=int(reading_id) if reading_id is not None else None,
            previous=previous,
            alerts=alerts,
        )

    # ------------------------------------------------------------------
    # Consultas
    # ------------------------------------------------------------------

    def get_sensor(self, sensor_id: int) -> Optional[Dict[str, Any]]:
        with self._engine.connect() as conn:
            row = (
                conn.execute(select(sensors).where(sensors.c.id == sensor_id))
                .mappings()
                .first()
            )
        return _row_to_dict(row) if row is not None else None

    def list_readings(self, sensor_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        """Últimas lecturas, más reciente primero."""
        with self._engine.connect() as conn:
            rows = (
                conn.execute(
                    select(sensor_readings)
                    .where(sensor_readings.c.sensor_id == sensor_id)
                    .order_by(sensor_readings.c.id.desc())
                    .limit(limit)
                )
                .mappings()
                .all()
            )
        return [_row_to_dict(r) for r in rows]

    def list_alerts(
        self,
        user_id: str,
        *,
        unacknowledged_only: bool = False,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        stmt = select(sensor_alerts).where(sensor_alerts.c.user_id == user_id)
        if unacknowledged_only:
            stmt = stmt.where(sensor_alerts.c.acknowledged.is_(False))
        stmt = stmt.order_by(sensor_alerts.c.id.desc()).limit(limit)
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Propiedad / registro
    # ------------------------------------------------------------------

    def add_available_sensor(
        self,
        physical_id: str,
        sensor_type: SensorType,
        *,
        firmware_version: Optional[str] = None,
        manufactured_at: Optional[datetime] = None,
        sim_card_number: Optional[str] = None,
    ) -> None:
        """Da de alta un dispositivo fabricado en el catálogo."""
        with self._engine.begin() as conn:
            conn.execute(
                insert(available_sensors).values(
                    physical_id=physical_id,
                    sensor_type=sensor_type.value,
                    firmware_version=firmware_version,
                    manufactured_at=_to_db(manufactured_at),
                    sim_card_number=sim_card_number,
                    registered_to_user=None,
                    registered_at=None,
                )
            )

    def get_available_sensor(self, physical_id: str) -> Optional[Dict[str, Any]]:
        with self._engine.connect() as conn:
            row = (
                conn.execute(
                    select(available_sensors).where(
                        available_sensors.c.physical_id == physical_id
                    )
                )
                .mappings()
                .first()
            )
        return _row_to_dict(row) if row is not None else None

    def register_sensor(
        self,
        *,
        user_id: str,
        physical_id: str,
        name: str,
        thresholds: ThresholdConfig,
        now: datetime,
        building_id: Optional[str] = None,
        location: Optional[str] = None,
    ) -> SensorRef:
        """Reclama un id físico libre y crea el registro del sensor.

        El reclamo es un UPDATE condicional sobre el catálogo: dos cuentas
        compitiendo por el mismo id no pueden ganar ambas.
        """
        db_now = _to_db(now)
        with self._engine.begin() as conn:
            catalog = (
                conn.execute(
                    select(available_sensors).where(
                        available_sensors.c.physical_id == physical_id
                    )
                )
                .mappings()
                .first()
            )
            if catalog is None:
                raise SensorNotAvailable(f"unknown physical id: {physical_id}")

            claimed = conn.execute(
                update(available_sensors)
                .where(available_sensors.c.physical_id == physical_id)
                .where(available_sensors.c.registered_to_user.is_(None))
                .values(registered_to_user=user_id, registered_at=db_now)
            )
            if claimed.rowcount != 1:
                raise SensorAlreadyRegistered(f"physical id already registered: {physical_id}")

            sensor_type = SensorType(catalog["sensor_type"])
            channels = CHANNELS[sensor_type]
            inserted = conn.execute(
                insert(sensors).values(
                    physical_id=physical_id,
                    user_id=user_id,
                    building_id=building_id,
                    name=name,
                    sensor_type=sensor_type.value,
                    location=location,
                    unit=channels.primary_unit,
                    secondary_unit=channels.secondary_unit,
                    battery_level=100.0,
                    status=SensorStatus.PENDING.value,
                    created_at=db_now,
                    updated_at=db_now,
                    **_thresholds_to_columns(thresholds),
                )
            )
            sensor_id = int(inserted.inserted_primary_key[0])

            row = (
                conn.execute(select(sensors).where(sensors.c.id == sensor_id))
                .mappings()
                .one()
            )
        return _row_to_ref(row)

    def release_sensor(self, *, user_id: str, sensor_id: int, now: datetime) -> str:
        """Elimina el registro y libera el id físico para re-registro.

        Returns:
            physical_id liberado
        """
        db_now = _to_db(now)
        with self._engine.begin() as conn:
            row = (
                conn.execute(
                    select(sensors.c.physical_id, sensors.c.created_at)
                    .where(sensors.c.id == sensor_id)
                    .where(sensors.c.user_id == user_id)
                )
                .mappings()
                .first()
            )
            if row is None:
                raise SensorNotOwned(f"sensor {sensor_id} not owned by {user_id}")
            physical_id = str(row["physical_id"])

            catalog = (
                conn.execute(
                    select(available_sensors.c.registered_at).where(
                        available_sensors.c.physical_id == physical_id
                    )
                )
                .mappings()
                .first()
            )
            registered_at = catalog["registered_at"] if catalog is not None else None

            # SQLite no aplica ON DELETE CASCADE sin PRAGMA: borrar explícito
            conn.execute(delete(sensor_readings).where(sensor_readings.c.sensor_id == sensor_id))
            conn.execute(delete(sensor_alerts).where(sensor_alerts.c.sensor_id == sensor_id))
            conn.execute(delete(sensors).where(sensors.c.id == sensor_id))

            conn.execute(
                update(available_sensors)
                .where(available_sensors.c.physical_id == physical_id)
                .where(available_sensors.c.registered_to_user == user_id)
                .values(registered_to_user=None, registered_at=None)
            )
            conn.execute(
                insert(sensor_ownership_history).values(
                    physical_id=physical_id,
                    user_id=user_id,
                    sensor_id=sensor_id,
                    registered_at=registered_at or row["created_at"],
                    released_at=db_now,
                )
            )
        return physical_id

    def update_thresholds(
        self,
        *,
        user_id: str,
        sensor_id: int,
        thresholds: ThresholdConfig,
        now: datetime,
    ) -> str:
        with self._engine.begin() as conn:
            result = conn.execute(
                update(sensors)
                .where(sensors.c.id == sensor_id)
                .where(sensors.c.user_id == user_id)
                .values(updated_at=_to_db(now), **_thresholds_to_columns(thresholds))
            )
            if result.rowcount != 1:
                raise SensorNotOwned(f"sensor {sensor_id} not owned by {user_id}")
            physical_id = conn.execute(
                select(sensors.c.physical_id).where(sensors.c.id == sensor_id)
            ).scalar_one()
        return str(physical_id)

    def ownership_history(self, physical_id: str) -> List[Dict[str, Any]]:
        with self._engine.connect() as conn:
            rows = (
                conn.execute(
                    select(sensor_ownership_history)
                    .where(sensor_ownership_history.c.physical_id == physical_id)
                    .order_by(sensor_ownership_history.c.id.asc())
                )
                .mappings()
                .all()
            )
        return [_row_to_dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Staleness
    # ------------------------------------------------------------------

    def mark_stale_offline(self, cutoff: datetime, now: datetime) -> List[int]:
        """Marca offline los sensores sin comunicación desde ``cutoff``.

        Sensores pending (sin datos) y ya offline no se tocan.
        """
        db_cutoff = _to_db(cutoff)
        stale_filter = (
            sensors.c.last_communication.is_not(None),
            sensors.c.last_communication < db_cutoff,
            sensors.c.status.not_in([SensorStatus.OFFLINE.value, SensorStatus.PENDING.value]),
        )
        with self._engine.begin() as conn:
            ids = [
                int(r[0])
                for r in conn.execute(select(sensors.c.id).where(*stale_filter)).all()
            ]
            if ids:
                conn.execute(
                    update(sensors)
                    .where(sensors.c.id.in_(ids))
                    .where(*stale_filter)
                    .values(status=SensorStatus.OFFLINE.value, updated_at=_to_db(now))
                )
        return ids
