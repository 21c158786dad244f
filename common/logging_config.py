"""Configuración de logging para los procesos del servicio."""

from __future__ import annotations

import logging


def setup_logging(level: str = "INFO") -> None:
    """Configura el root logger con salida a consola.

    Llamar una sola vez desde el entry point (app FastAPI o job CLI).
    """
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    # Evitar handlers duplicados si uvicorn recarga el módulo
    for handler in list(root_logger.handlers):
        if getattr(handler, "_telemetry_handler", False):
            root_logger.removeHandler(handler)
    console_handler._telemetry_handler = True  # type: ignore[attr-defined]
    root_logger.addHandler(console_handler)

    # Librerías ruidosas
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("paho").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logging.getLogger(__name__).info("[LOG] Logging initialized level=%s", level.upper())
