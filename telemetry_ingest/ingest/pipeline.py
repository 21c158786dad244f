"""Servicio de ingesta de telemetría.

Dueño único del transporte y del pipeline durante la vida del proceso:

    paho thread ──call_soon_threadsafe──▶ submit()
        └─ TopicRouter (topic + payload) ─▶ shard = crc32(device) % N
            └─ worker del shard: dedup? → resolver → writer (+ estado)

- Mensajes de un mismo dispositivo se procesan en orden de llegada (mismo
  shard, un worker por shard). Dispositivos distintos van en paralelo.
- Cada llamada al store corre en asyncio.to_thread con timeout. Timeout →
  log + drop, sin retry inline.
- Excepción del store → RetryQueue acotada con backoff. Agotado → ERROR,
  contador Prometheus y hook on_persistence_failure.
"""

from __future__ import annotations

import asyncio
import logging
import time
import zlib
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from common.config import PipelineSettings

from .. import metrics
from ..domain import IngestOutcome, IngestResult, ParsedMessage
from ..infrastructure.persistence import SensorRepository
from ..mqtt import IngestTransport, TopicRouter, extract_device_id
from .alerts import AlertRules
from .reading_writer import ReadingWriter
from .resilience import Deduplicator, RetryConfig, RetryQueue, idempotency_key
from .sensor_resolver import SensorResolver

logger = logging.getLogger(__name__)

PersistenceFailureHook = Callable[[ParsedMessage, str], None]


def shard_for(device_id: str, num_shards: int) -> int:
    """Shard estable por dispositivo (no depende del hash seed del proceso)."""
    return zlib.crc32(device_id.encode("utf-8")) % num_shards


def _drop_result(topic: str) -> IngestResult:
    device_id = extract_device_id(topic)
    if device_id is None:
        return IngestResult(IngestOutcome.DROPPED_TOPIC, reason="foreign topic")
    return IngestResult(IngestOutcome.DROPPED_PAYLOAD, device_id=device_id, reason="invalid payload")


class TelemetryIngestService:
    """Pipeline de ingesta con start/stop explícitos."""

    def __init__(
        self,
        repository: SensorRepository,
        transport: Optional[IngestTransport] = None,
        settings: Optional[PipelineSettings] = None,
        *,
        resolver: Optional[SensorResolver] = None,
        writer: Optional[ReadingWriter] = None,
        deduplicator: Optional[Deduplicator] = None,
        on_persistence_failure: Optional[PersistenceFailureHook] = None,
    ):
        self._settings = settings or PipelineSettings()
        self._repository = repository
        self._transport = transport
        self._router = TopicRouter()
        self._resolver = resolver or SensorResolver(
            repository,
            ttl_seconds=self._settings.sensor_map_ttl_seconds,
            max_size=self._settings.sensor_map_max_size,
        )
        self._writer = writer or ReadingWriter(
            repository, AlertRules(self._settings.battery_low_threshold)
        )
        self._dedup = deduplicator
        self._on_persistence_failure = on_persistence_failure
        self._retry_config = RetryConfig(
            max_attempts=self._settings.retry_max_attempts,
            base_delay=self._settings.retry_base_delay,
            max_delay=self._settings.retry_max_delay,
        )

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queues: List["asyncio.Queue[ParsedMessage]"] = []
        self._workers: List[asyncio.Task] = []
        self._retry: Optional[RetryQueue[ParsedMessage]] = None
        self._running = False
        self._started_at: Optional[float] = None

        self._outcomes: Dict[str, int] = {o.value: 0 for o in IngestOutcome}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Arranca workers, cola de reintentos y transporte.

        Raises:
            ConfigurationError: si el transporte no puede arrancar
        """
        if self._running:
            return

        self._loop = asyncio.get_running_loop()
        num_workers = self._settings.num_workers
        self._queues = [
            asyncio.Queue(maxsize=self._settings.queue_size) for _ in range(num_workers)
        ]
        self._workers = [
            self._loop.create_task(self._worker(i, q), name=f"ingest-worker-{i}")
            for i, q in enumerate(self._queues)
        ]
        self._retry = RetryQueue(
            self._retry_config,
            handler=self._retry_handler,
            on_exhausted=self._on_retries_exhausted,
            maxsize=self._settings.retry_queue_size,
        )
        self._retry.start()
        self._running = True
        self._started_at = time.time()

        logger.info(
            "[PIPELINE] Started workers=%d queue_size=%d store_timeout=%.1fs dedup=%s",
            num_workers,
            self._settings.queue_size,
            self._settings.store_timeout_seconds,
            self._dedup is not None,
        )

        if self._transport is not None:
            try:
                await asyncio.to_thread(self._transport.start, self.submit_threadsafe)
            except Exception:
                await self.stop(drain_timeout=0)
                raise

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Detiene el transporte y procesa lo encolado (best effort)."""
        if not self._running:
            return

        if self._transport is not None:
            await asyncio.to_thread(self._transport.stop)

        if drain_timeout > 0:
            try:
                await asyncio.wait_for(self.drain(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("[PIPELINE] Drain timed out after %.1fs", drain_timeout)

        self._running = False
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        if self._retry is not None:
            await self._retry.stop()

        logger.info("[PIPELINE] Stopped. outcomes=%s", self._outcomes)

    async def drain(self) -> None:
        """Espera a que shards y reintentos queden vacíos."""
        for queue in self._queues:
            await queue.join()
        if self._retry is not None:
            await self._retry.join()
        for queue in self._queues:
            await queue.join()

    # ------------------------------------------------------------------
    # Entrada
    # ------------------------------------------------------------------

    def submit_threadsafe(
        self,
        topic: str,
        payload: Union[bytes, str],
        received_at: datetime,
    ) -> None:
        """Handler del transporte: corre en el thread de red de paho."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("[PIPELINE] Message on topic=%s before start; dropped", topic)
            return
        loop.call_soon_threadsafe(self.submit, topic, payload, received_at)

    def submit(
        self,
        topic: str,
        payload: Union[bytes, str],
        received_at: Optional[datetime] = None,
    ) -> bool:
        """Rutea y encola en el shard del dispositivo.

        Returns:
            True si el mensaje quedó encolado
        """
        message = self._route(topic, payload, received_at)
        if message is None:
            return False

        if not self._running or not self._queues:
            logger.warning("[PIPELINE] Not running; dropped device=%s", message.device_id)
            self._record(IngestResult(IngestOutcome.DROPPED_BACKPRESSURE, device_id=message.device_id))
            return False

        shard = shard_for(message.device_id, len(self._queues))
        try:
            self._queues[shard].put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "[PIPELINE] Shard %d queue full (size=%d); dropped device=%s",
                shard,
                self._settings.queue_size,
                message.device_id,
            )
            self._record(IngestResult(IngestOutcome.DROPPED_BACKPRESSURE, device_id=message.device_id))
            return False
        return True

    async def handle_message(
        self,
        topic: str,
        payload: Union[bytes, str],
        received_at: Optional[datetime] = None,
    ) -> IngestResult:
        """Procesa un mensaje inline (sin shard), devolviendo el resultado."""
        message = self._route(topic, payload, received_at)
        if message is None:
            return _drop_result(topic)
        return await self.process(message)

    def _route(
        self,
        topic: str,
        payload: Union[bytes, str],
        received_at: Optional[datetime],
    ) -> Optional[ParsedMessage]:
        message = self._router.route(topic, payload, received_at)
        if message is None:
            self._record(_drop_result(topic))
        return message

    # ------------------------------------------------------------------
    # Procesamiento
    # ------------------------------------------------------------------

    async def process(self, message: ParsedMessage, attempt: int = 1) -> IngestResult:
        """dedup → resolve → write/evaluate para un mensaje ya ruteado."""
        started = time.perf_counter()

        if attempt == 1 and self._dedup is not None:
            key = idempotency_key(message)
            if await self._dedup.check_and_mark(key):
                logger.info("[PIPELINE] Duplicate device=%s key=%s; skipped", message.device_id, key)
                return self._record(
                    IngestResult(IngestOutcome.DUPLICATE, device_id=message.device_id, reason=key)
                )

        timeout = self._settings.store_timeout_seconds
        try:
            sensor = await asyncio.wait_for(
                asyncio.to_thread(self._resolver.resolve, message.device_id),
                timeout=timeout,
            )
            if sensor is None:
                return self._record(
                    IngestResult(
                        IngestOutcome.UNRESOLVED,
                        device_id=message.device_id,
                        reason="no active sensor record",
                    )
                )
            applied = await asyncio.wait_for(
                asyncio.to_thread(self._writer.write, sensor, message),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "[PIPELINE] Store timeout device=%s after %.1fs; dropping",
                message.device_id,
                timeout,
            )
            return self._record(
                IngestResult(IngestOutcome.TIMEOUT, device_id=message.device_id, reason="store timeout")
            )
        except Exception as e:
            return self._persistence_failed(message, attempt, e)

        outcome = applied.outcome
        if not outcome.found:
            self._resolver.invalidate(message.device_id)
            return self._record(
                IngestResult(
                    IngestOutcome.UNRESOLVED,
                    device_id=message.device_id,
                    sensor_id=sensor.sensor_id,
                    reason="sensor removed before write",
                )
            )

        metrics.PROCESSING_LATENCY.observe(time.perf_counter() - started)
        details: Dict[str, Any] = {
            "reading_id": outcome.reading_id,
            "attempt": attempt,
            "alerts": [a.alert_type for a in outcome.alerts],
        }

        if not outcome.snapshot_applied:
            return self._record(
                IngestResult(
                    IngestOutcome.STALE,
                    device_id=message.device_id,
                    sensor_id=sensor.sensor_id,
                    status=applied.evaluation.status,
                    reason="snapshot is newer than reading",
                    details=details,
                )
            )

        return self._record(
            IngestResult(
                IngestOutcome.ACCEPTED,
                device_id=message.device_id,
                sensor_id=sensor.sensor_id,
                status=applied.evaluation.status,
                details=details,
            )
        )

    def _persistence_failed(self, message: ParsedMessage, attempt: int, error: Exception) -> IngestResult:
        error_text = f"{type(error).__name__}: {error}"
        logger.warning(
            "[PIPELINE] Store error device=%s attempt=%d err=%s",
            message.device_id,
            attempt,
            error_text,
        )

        if self._retry is None:
            self._on_retries_exhausted(message, attempt, error_text)
        elif self._retry.schedule(message, attempt, error_text):
            metrics.RETRIES_TOTAL.inc()
            return self._record(
                IngestResult(
                    IngestOutcome.RETRY_SCHEDULED,
                    device_id=message.device_id,
                    reason=error_text,
                    details={"attempt": attempt},
                )
            )

        return self._record(
            IngestResult(
                IngestOutcome.FAILED,
                device_id=message.device_id,
                reason=error_text,
                details={"attempt": attempt},
            )
        )

    async def _retry_handler(self, message: ParsedMessage, attempt: int) -> None:
        await self.process(message, attempt=attempt)

    def _on_retries_exhausted(self, message: ParsedMessage, attempt: int, error: str) -> None:
        metrics.PERSISTENCE_FAILURES.inc()
        logger.error(
            "[PIPELINE] Persistence failed device=%s attempts=%d value=%s; reading dropped err=%s",
            message.device_id,
            attempt,
            message.value,
            error,
        )
        if self._on_persistence_failure is None:
            return
        try:
            self._on_persistence_failure(message, error)
        except Exception as e:
            logger.exception("[PIPELINE] on_persistence_failure hook error: %s", e)

    async def _worker(self, index: int, queue: "asyncio.Queue[ParsedMessage]") -> None:
        while True:
            message = await queue.get()
            try:
                await self.process(message)
            except Exception as e:
                # Un mensaje nunca tumba el worker del shard
                logger.exception("[PIPELINE] Worker %d error device=%s: %s", index, message.device_id, e)
            finally:
                queue.task_done()

    def _record(self, result: IngestResult) -> IngestResult:
        self._outcomes[result.outcome.value] += 1
        metrics.MESSAGES_TOTAL.labels(outcome=result.outcome.value).inc()
        return result

    # ------------------------------------------------------------------
    # Estado
    # ------------------------------------------------------------------

    @property
    def resolver(self) -> SensorResolver:
        return self._resolver

    @property
    def router(self) -> TopicRouter:
        return self._router

    @property
    def transport(self) -> Optional[IngestTransport]:
        return self._transport

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def outcomes(self) -> Dict[str, int]:
        return dict(self._outcomes)

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "uptime_seconds": time.time() - self._started_at if self._started_at else 0,
            "workers": len(self._workers),
            "queue_depths": [q.qsize() for q in self._queues],
            "queue_size": self._settings.queue_size,
            "outcomes": dict(self._outcomes),
            "router": self._router.stats,
            "resolver": self._resolver.stats,
            "retry": self._retry.stats if self._retry is not None else None,
            "dedup": self._dedup.stats if self._dedup is not None else {"enabled": False},
            "transport": self._transport.stats if self._transport is not None else None,
        }

    def health_check(self) -> Dict[str, Any]:
        connected = self._transport.is_connected if self._transport is not None else None
        return {
            "healthy": self._running and connected is not False,
            "running": self._running,
            "transport_connected": connected,
            "retry_pending": self._retry.stats["pending"] if self._retry is not None else 0,
        }
