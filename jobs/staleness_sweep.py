"""Staleness sweep: marca offline los sensores sin comunicación reciente.

Job externo al pipeline de mensajes. Un sensor pasa a offline cuando
now - last_communication supera la ventana configurada. Sensores pending
(nunca recibieron datos) no se tocan.

Uso:
    python -m jobs.staleness_sweep --window-seconds 3600 --sleep-seconds 300
    python -m jobs.staleness_sweep --once
"""

from __future__ import annotations

import argparse
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from common.config import get_settings
from common.db import get_engine
from common.logging_config import setup_logging
from telemetry_ingest import metrics
from telemetry_ingest.infrastructure.persistence import SqlSensorRepository, ensure_schema

logger = logging.getLogger(__name__)


def run_once(
    repository: SqlSensorRepository,
    window_seconds: int,
    now: Optional[datetime] = None,
) -> List[int]:
    """Una pasada del sweep.

    Returns:
        ids de los sensores marcados offline en esta pasada
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=window_seconds)
    ids = repository.mark_stale_offline(cutoff, now)
    if ids:
        metrics.SENSORS_MARKED_OFFLINE.inc(len(ids))
        logger.info("[SWEEP] Marked offline count=%d ids=%s cutoff=%s", len(ids), ids, cutoff.isoformat())
    else:
        logger.info("[SWEEP] No stale sensors cutoff=%s", cutoff.isoformat())
    return ids


def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level)

    p = argparse.ArgumentParser(description="Mark sensors offline after prolonged silence")
    p.add_argument("--window-seconds", type=int, default=settings.staleness_window_seconds)
    p.add_argument("--sleep-seconds", type=float, default=300.0)
    p.add_argument("--once", action="store_true", help="run a single iteration and exit")
    args = p.parse_args()

    engine = get_engine()
    ensure_schema(engine)
    repository = SqlSensorRepository(engine)

    logger.info(
        "[SWEEP] Started window=%ds sleep=%.1fs once=%s",
        args.window_seconds,
        args.sleep_seconds,
        args.once,
    )

    while True:
        try:
            run_once(repository, args.window_seconds)
            if args.once:
                return
            time.sleep(args.sleep_seconds)
        except Exception as e:
            logger.error("[SWEEP] Iteration failed: %s", e)
            if args.once:
                raise
            time.sleep(args.sleep_seconds)


if __name__ == "__main__":
    main()
