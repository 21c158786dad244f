"""Servicio de ingesta de telemetría de sensores.

Recibe mediciones por MQTT, las resuelve al sensor dueño, persiste la
lectura y recalcula el estado derivado (ok/warning/critical).
"""

__version__ = "0.4.0"
