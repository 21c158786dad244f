"""Health, readiness, stats y métricas Prometheus."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from common.db import ping

from ..auth import require_api_key
from ..infrastructure.persistence import SqlSensorRepository
from ..ingest import TelemetryIngestService
from .deps import get_repository, get_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    """Liveness probe: ok mientras el proceso esté vivo."""
    return {"status": "ok"}


@router.get("/ready")
def ready(
    repository: SqlSensorRepository = Depends(get_repository),
    service: TelemetryIngestService = Depends(get_service),
):
    """Readiness probe: DB alcanzable y pipeline corriendo."""
    db_ok = ping(repository.engine)
    pipeline = service.health_check()
    if not db_ok or not pipeline["healthy"]:
        logger.warning("[HEALTH] Not ready db=%s pipeline=%s", db_ok, pipeline)
        raise HTTPException(status_code=503, detail="not ready")
    return {"status": "ready", "pipeline": pipeline}


@router.get("/stats", dependencies=[Depends(require_api_key)])
def stats(service: TelemetryIngestService = Depends(get_service)):
    return service.stats


@router.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
