"""Evaluador de estado del sensor.

Deriva el enum de estado a partir del/los valor(es) actuales y las bandas
de umbral configuradas. Se re-evalúa en cada lectura aceptada.

Regla por canal, dado valor v, banda warning (wl, wu) y critical (cl, cu):
1. cl definido y v < cl, o cu definido y v > cu → CRITICAL
2. wl definido y v < wl, o wu definido y v > wu → WARNING
3. Resto → OK

Los límites son estrictos: un valor igual al límite no dispara.
Sensores compuestos: se evalúan ambos canales y gana el más severo.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from ..domain import (
    SEVERITY,
    ChannelThresholds,
    SensorStatus,
    ThresholdBand,
    ThresholdConfig,
)


@dataclass(frozen=True)
class ChannelEvaluation:
    """Resultado de evaluar un canal (para mensajes de alerta)."""

    channel: str
    value: float
    status: SensorStatus
    # Límite que disparó: ("lower"|"upper", valor)
    bound: Optional[Tuple[str, float]] = None


@dataclass(frozen=True)
class StatusEvaluation:
    status: SensorStatus
    primary: ChannelEvaluation
    secondary: Optional[ChannelEvaluation] = None

    @property
    def trigger(self) -> ChannelEvaluation:
        """Canal que determinó el estado final."""
        if self.secondary is not None and SEVERITY[self.secondary.status] > SEVERITY[self.primary.status]:
            return self.secondary
        return self.primary


def _breached_bound(value: float, band: ThresholdBand) -> Optional[Tuple[str, float]]:
    if band.lower is not None and value < band.lower:
        return ("lower", band.lower)
    if band.upper is not None and value > band.upper:
        return ("upper", band.upper)
    return None


def evaluate_channel(
    value: float,
    thresholds: ChannelThresholds,
    channel: str = "primary",
) -> ChannelEvaluation:
    """Evalúa un único canal contra sus bandas warning/critical."""
    bound = _breached_bound(value, thresholds.critical)
    if bound is not None:
        return ChannelEvaluation(channel, value, SensorStatus.CRITICAL, bound)

    bound = _breached_bound(value, thresholds.warning)
    if bound is not None:
        return ChannelEvaluation(channel, value, SensorStatus.WARNING, bound)

    return ChannelEvaluation(channel, value, SensorStatus.OK)


def most_severe(*statuses: SensorStatus) -> SensorStatus:
    """CRITICAL > WARNING > OK, sin importar qué canal lo produjo."""
    return max(statuses, key=lambda s: SEVERITY[s])


def evaluate_status(
    value: float,
    thresholds: ThresholdConfig,
    secondary_value: Optional[float] = None,
) -> StatusEvaluation:
    """Estado global del sensor a partir de sus canales.

    El canal secundario solo se evalúa si hay valor y bandas configuradas
    para él; en otro caso no aporta severidad.
    """
    primary = evaluate_channel(value, thresholds.primary, "primary")

    secondary: Optional[ChannelEvaluation] = None
    if secondary_value is not None and thresholds.secondary is not None:
        secondary = evaluate_channel(secondary_value, thresholds.secondary, "secondary")

    if secondary is None:
        return StatusEvaluation(status=primary.status, primary=primary)

    return StatusEvaluation(
        status=most_severe(primary.status, secondary.status),
        primary=primary,
        secondary=secondary,
    )
