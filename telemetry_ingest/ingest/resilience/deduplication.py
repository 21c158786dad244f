"""Deduplicación opcional de mensajes de telemetría.

Deshabilitada por defecto: la entrega MQTT es "at least once" y cada
entrega duplicada produce su propia fila de historial. Con
INGEST_DEDUP_ENABLED=true se descarta un mensaje cuya clave de
idempotencia ya se vio dentro del TTL.

Clave de idempotencia, en orden de preferencia:
1. msgId del payload
2. device:seq si el dispositivo manda secuencia
3. MD5(device:value:battery:segundo de ingesta)[:16]

Backends:
- MessageDeduplicator: Redis SET NX EX (compartido entre procesos)
- DeduplicationCache: dict en memoria con TTL (un solo proceso)
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Optional, Protocol

import redis

from ...domain import ParsedMessage

logger = logging.getLogger(__name__)


def idempotency_key(message: ParsedMessage) -> str:
    if message.msg_id:
        return f"{message.device_id}:msg:{message.msg_id}"
    if message.sequence is not None:
        return f"{message.device_id}:seq:{message.sequence}"
    battery = "-" if message.battery is None else f"{message.battery:.2f}"
    data = (
        f"{message.device_id}:{message.value:.6f}:{battery}:"
        f"{int(message.received_at.timestamp())}"
    )
    return f"{message.device_id}:h:{hashlib.md5(data.encode()).hexdigest()[:16]}"


class Deduplicator(Protocol):
    async def check_and_mark(self, key: str) -> bool:
        """True si ``key`` ya se vio (duplicado); si no, la registra."""
        ...

    @property
    def stats(self) -> dict:
        ...


class DeduplicationCache:
    """Cache de deduplicación en memoria con TTL.

    Limpieza automática cuando el cache supera 50% de capacidad.
    """

    def __init__(self, ttl_seconds: int = 300, max_size: int = 50000):
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._cache: dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0

    async def check_and_mark(self, key: str) -> bool:
        async with self._lock:
            self._cleanup()
            now = time.time()
            seen_at = self._cache.get(key)
            if seen_at is not None and now - seen_at <= self._ttl:
                self._hits += 1
                return True
            self._misses += 1
            self._cache[key] = now
            return False

    def _cleanup(self) -> None:
        """Elimina entradas expiradas."""
        if len(self._cache) <= self._max_size // 2:
            return

        now = time.time()
        expired = [k for k, v in self._cache.items() if now - v > self._ttl]
        for k in expired:
            del self._cache[k]

        # Sigue lleno: descartar las más viejas
        overflow = len(self._cache) - self._max_size
        if overflow > 0:
            for k in sorted(self._cache, key=self._cache.__getitem__)[:overflow]:
                del self._cache[k]

    @property
    def stats(self) -> dict:
        return {
            "backend": "memory",
            "size": len(self._cache),
            "duplicates_found": self._hits,
            "total_checked": self._hits + self._misses,
            "ttl_seconds": self._ttl,
        }


class MessageDeduplicator:
    """Deduplicador de mensajes usando Redis SET con TTL.

    Si Redis falla, el mensaje se deja pasar (fail open).
    """

    KEY_PREFIX = "telemetry:dedup:"

    def __init__(self, redis_client: "redis.Redis", ttl_seconds: int = 300):
        self._redis = redis_client
        self._ttl = ttl_seconds
        self._total_checked = 0
        self._duplicates_found = 0
        self._errors = 0

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 300) -> "MessageDeduplicator":
        return cls(redis.Redis.from_url(url, socket_timeout=2), ttl_seconds=ttl_seconds)

    def is_duplicate(self, key: str) -> bool:
        self._total_checked += 1
        try:
            # SET NX = solo si no existe, retorna None si ya existía
            result = self._redis.set(f"{self.KEY_PREFIX}{key}", "1", nx=True, ex=self._ttl)
        except redis.RedisError as e:
            self._errors += 1
            logger.warning("[DEDUP] redis_error key=%s err=%s", key, e)
            return False

        if result is None:
            self._duplicates_found += 1
            logger.debug("[DEDUP] duplicate key=%s", key)
            return True
        return False

    async def check_and_mark(self, key: str) -> bool:
        return await asyncio.to_thread(self.is_duplicate, key)

    @property
    def stats(self) -> dict:
        return {
            "backend": "redis",
            "total_checked": self._total_checked,
            "duplicates_found": self._duplicates_found,
            "errors": self._errors,
            "ttl_seconds": self._ttl,
        }


def build_deduplicator(
    enabled: bool,
    redis_url: Optional[str],
    ttl_seconds: int = 300,
) -> Optional[Deduplicator]:
    if not enabled:
        return None
    if redis_url:
        logger.info("[DEDUP] Enabled (redis) ttl=%ds", ttl_seconds)
        return MessageDeduplicator.from_url(redis_url, ttl_seconds=ttl_seconds)
    logger.info("[DEDUP] Enabled (memory) ttl=%ds", ttl_seconds)
    return DeduplicationCache(ttl_seconds=ttl_seconds)
