"""Jerarquía de errores del servicio de ingesta.

Solo ConfigurationError termina el proceso. Todo lo demás queda aislado
al mensaje que lo produjo.
"""

from __future__ import annotations


class TelemetryError(Exception):
    """Base de todos los errores del servicio."""


class ConfigurationError(TelemetryError):
    """Configuración inválida detectada al arrancar (fatal)."""


class MalformedMessageError(TelemetryError):
    """Topic o payload que no cumple el contrato de entrada."""


class PersistenceError(TelemetryError):
    """Fallo del store al leer o escribir. Reintentable."""


class OwnershipError(TelemetryError):
    """Conflicto en el registro/liberación de un sensor físico."""


class SensorNotAvailable(OwnershipError):
    """El identificador físico no existe en el catálogo de fabricación."""


class SensorAlreadyRegistered(OwnershipError):
    """El identificador físico ya pertenece a una cuenta."""


class SensorNotOwned(OwnershipError):
    """El registro del sensor no existe o pertenece a otra cuenta."""
