"""Retry con backoff exponencial para escrituras al store.

Los reintentos nunca se hacen inline en el worker del shard: un fallo se
encola en una RetryQueue acotada que los ejecuta en background con
backoff. Si la cola está llena o se agotan los intentos, el mensaje se
entrega al callback de agotamiento.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuración para retry con backoff."""

    max_attempts: int = 3  # intentos totales, incluido el primero
    base_delay: float = 0.5  # segundos
    max_delay: float = 10.0  # segundos
    exponential_base: float = 2.0
    jitter: bool = True  # Añadir variación aleatoria

    def calculate_delay(self, attempt: int) -> float:
        """Calcula el delay para un intento dado.

        Args:
            attempt: Número de intento fallido (1-indexed)

        Returns:
            Delay en segundos
        """
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            # Añadir jitter de ±25%
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0, delay)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts


@dataclass
class RetryItem(Generic[T]):
    payload: T
    attempt: int  # intentos ya realizados
    last_error: str
    due_at: float


class RetryQueue(Generic[T]):
    """Cola acotada de reintentos con un único worker asyncio."""

    def __init__(
        self,
        config: RetryConfig,
        handler: Callable[[T, int], Awaitable[None]],
        on_exhausted: Callable[[T, int, str], None],
        maxsize: int = 500,
    ):
        self._config = config
        self._handler = handler
        self._on_exhausted = on_exhausted
        self._queue: "asyncio.Queue[RetryItem[T]]" = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None

        self._scheduled = 0
        self._executed = 0
        self._overflow = 0
        self._exhausted = 0

    @property
    def config(self) -> RetryConfig:
        return self._config

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run(), name="retry-queue")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        if not self._queue.empty():
            logger.warning("[RETRY] Stopped with %d pending retries discarded", self._queue.qsize())

    def schedule(self, payload: T, attempt: int, error: str) -> bool:
        """Encola un reintento tras el intento ``attempt`` fallido.

        Returns:
            True si quedó encolado; False si se declaró agotado
        """
        if not self._config.should_retry(attempt):
            self._exhaust(payload, attempt, error)
            return False

        delay = self._config.calculate_delay(attempt)
        item = RetryItem(
            payload=payload,
            attempt=attempt,
            last_error=error,
            due_at=asyncio.get_running_loop().time() + delay,
        )
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self._overflow += 1
            logger.error("[RETRY] Retry queue full (size=%d)", self._queue.maxsize)
            self._exhaust(payload, attempt, f"retry queue full; last error: {error}")
            return False

        self._scheduled += 1
        logger.warning(
            "[RETRY] attempt=%d/%d delay=%.2fs err=%s",
            attempt,
            self._config.max_attempts,
            delay,
            error,
        )
        return True

    async def join(self) -> None:
        await self._queue.join()

    def _exhaust(self, payload: T, attempt: int, error: str) -> None:
        self._exhausted += 1
        self._on_exhausted(payload, attempt, error)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            item = await self._queue.get()
            try:
                wait = item.due_at - loop.time()
                if wait > 0:
                    await asyncio.sleep(wait)
                self._executed += 1
                await self._handler(item.payload, item.attempt + 1)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("[RETRY] Retry handler error: %s", e)
            finally:
                self._queue.task_done()

    @property
    def stats(self) -> dict:
        return {
            "pending": self._queue.qsize(),
            "max_size": self._queue.maxsize,
            "scheduled": self._scheduled,
            "executed": self._executed,
            "overflow": self._overflow,
            "exhausted": self._exhausted,
            "max_attempts": self._config.max_attempts,
        }
