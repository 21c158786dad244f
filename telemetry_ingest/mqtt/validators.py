"""Validadores de payloads MQTT de telemetría.

Formato esperado (topic sensors/<device-id>/data):
{
    "value": 35.2,          # requerido, numérico
    "battery": 88,          # opcional, 0-100
    "unit": "°C",           # opcional
    "humidity": 41.0,       # opcional, canal secundario según tipo
    "msgId": "...",         # opcional, clave de idempotencia
    "seq": 12345            # opcional, secuencia del dispositivo
}

Los campos extra se conservan para que el writer extraiga el canal
secundario una vez conocido el tipo de sensor.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

MAX_ABS_VALUE = 1e12


def _is_number(v: Any) -> bool:
    # bool es subclase de int; no es una medición válida
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _check_finite(v: float) -> float:
    if math.isnan(v):
        raise ValueError("Value is NaN")
    if math.isinf(v):
        raise ValueError("Value is infinite")
    if not (-MAX_ABS_VALUE < v < MAX_ABS_VALUE):
        raise ValueError("Value out of range")
    return v


class TelemetryPayload(BaseModel):
    """Schema de validación para mediciones de dispositivo."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    value: float
    battery: Optional[float] = None
    unit: Optional[str] = None
    msg_id: Optional[str] = Field(default=None, alias="msgId")
    seq: Optional[int] = None

    @field_validator("value", mode="before")
    @classmethod
    def validate_value(cls, v):
        if not _is_number(v):
            raise ValueError(f"value must be a number, got: {type(v).__name__}")
        return _check_finite(float(v))

    @field_validator("battery", mode="before")
    @classmethod
    def validate_battery(cls, v):
        # Batería inválida no invalida la medición: se descarta el campo
        if v is None or not _is_number(v):
            return None
        v = float(v)
        if math.isnan(v) or not (0.0 <= v <= 100.0):
            return None
        return v

    @field_validator("unit", mode="before")
    @classmethod
    def validate_unit(cls, v):
        if v is None or not isinstance(v, str):
            return None
        v = v.strip()
        return v or None

    @field_validator("msg_id", mode="before")
    @classmethod
    def validate_msg_id(cls, v):
        if v is None:
            return None
        return str(v).strip() or None

    @field_validator("seq", mode="before")
    @classmethod
    def validate_seq(cls, v):
        if v is None or isinstance(v, bool):
            return None
        try:
            return int(v)
        except (TypeError, ValueError):
            return None

    @property
    def numeric_extras(self) -> Dict[str, float]:
        """Campos extra numéricos y finitos (candidatos a canal secundario)."""
        extras: Dict[str, float] = {}
        for key, raw in (self.model_extra or {}).items():
            if not _is_number(raw):
                continue
            v = float(raw)
            if math.isnan(v) or math.isinf(v):
                continue
            extras[key] = v
        return extras


@dataclass
class ValidationResult:
    """Resultado de validación."""

    valid: bool
    payload: Optional[TelemetryPayload] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def validate_telemetry_payload(data: Any) -> ValidationResult:
    """Valida un payload ya deserializado.

    Args:
        data: Objeto resultante de parsear el JSON del mensaje

    Returns:
        ValidationResult con payload validado o error
    """
    if not isinstance(data, dict):
        return ValidationResult(
            valid=False,
            error=f"payload must be a JSON object, got: {type(data).__name__}",
        )

    if "value" not in data:
        return ValidationResult(valid=False, error="missing required field: value")

    warnings: List[str] = []
    raw_battery = data.get("battery")

    try:
        payload = TelemetryPayload(**data)
    except ValidationError as e:
        errors = "; ".join(err.get("msg", "") for err in e.errors())
        return ValidationResult(valid=False, error=errors or str(e))

    if raw_battery is not None and payload.battery is None:
        warnings.append(f"ignored invalid battery: {raw_battery!r}")

    return ValidationResult(valid=True, payload=payload, warnings=warnings)
