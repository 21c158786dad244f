"""Dependencias FastAPI: objetos de larga vida colgados de app.state."""

from __future__ import annotations

from fastapi import Request

from ..infrastructure.persistence import SqlSensorRepository
from ..ingest import SensorRegistry, TelemetryIngestService


def get_repository(request: Request) -> SqlSensorRepository:
    return request.app.state.repository


def get_registry(request: Request) -> SensorRegistry:
    return request.app.state.registry


def get_service(request: Request) -> TelemetryIngestService:
    return request.app.state.ingest_service
