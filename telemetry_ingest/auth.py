"""Autenticación por API Key para los endpoints de operación.

SECURITY: En producción, INGEST_API_KEY debe estar configurado.
"""

from __future__ import annotations

import logging

from fastapi import Header, HTTPException, Request

logger = logging.getLogger(__name__)


def require_api_key(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> None:
    """Valida X-API-Key contra settings.api_key.

    Sin INGEST_API_KEY configurado se permite el acceso (modo desarrollo).
    """
    expected = request.app.state.settings.api_key
    if not expected:
        return

    if not x_api_key:
        raise HTTPException(status_code=401, detail="API key required")

    if x_api_key != expected:
        logger.warning("[AUTH] Invalid API key attempt path=%s", request.url.path)
        raise HTTPException(status_code=401, detail="Invalid API key")
