"""Resolución de device-id físico → registro de sensor.

Mantiene un caché en memoria (TTL + LRU) para hot paths O(1). El caché
se invalida explícitamente al registrar, liberar o cambiar umbrales de
un sensor, así que un re-registro nunca sigue escribiendo en el dueño
anterior.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Optional, Tuple

from ..domain import SensorRef
from ..infrastructure.persistence import SensorRepository

logger = logging.getLogger(__name__)


class SensorResolver:
    """Resuelve el registro activo de un id físico.

    Thread-safe: se llama desde asyncio.to_thread en varios workers.
    """

    def __init__(
        self,
        repository: SensorRepository,
        ttl_seconds: int = 300,
        max_size: int = 10000,
    ):
        self._repository = repository
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._cache: "OrderedDict[str, Tuple[SensorRef, float]]" = OrderedDict()
        self._lock = threading.Lock()
        # Se incrementa en cada invalidate(); un lookup en vuelo no cachea
        # un resultado obtenido antes de la invalidación.
        self._generation = 0

        self._hits = 0
        self._misses = 0
        self._unresolved = 0
        self._ambiguous = 0

    def resolve(self, device_id: str) -> Optional[SensorRef]:
        """Resuelve el registro activo para ``device_id``.

        - 0 registros → None (WARNING, el mensaje se descarta)
        - 1 registro → ese registro
        - >1 registros → ERROR y se usa el de menor id (determinístico)

        Raises:
            PersistenceError: si el store falla (no se cachea nada)
        """
        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(device_id)
            if cached is not None:
                ref, expires_at = cached
                if expires_at > now:
                    self._cache.move_to_end(device_id)
                    self._hits += 1
                    return ref
                self._cache.pop(device_id, None)
            self._misses += 1
            generation = self._generation

        matches = self._repository.find_active_by_physical_id(device_id)

        if not matches:
            self._unresolved += 1
            logger.warning("[RESOLVER] No active sensor for device=%s; dropping", device_id)
            return None

        if len(matches) > 1:
            self._ambiguous += 1
            logger.error(
                "[RESOLVER] Integrity violation: device=%s has %d active records ids=%s; using id=%d",
                device_id,
                len(matches),
                [m.sensor_id for m in matches],
                matches[0].sensor_id,
            )

        ref = matches[0]
        with self._lock:
            if self._generation != generation:
                logger.debug("[RESOLVER] device=%s invalidated during lookup; not cached", device_id)
                return ref
            self._cache[device_id] = (ref, now + self._ttl)
            self._cache.move_to_end(device_id)
            while len(self._cache) > self._max_size:
                self._cache.popitem(last=False)
        return ref

    def invalidate(self, device_id: str) -> None:
        with self._lock:
            self._cache.pop(device_id, None)
            self._generation += 1
        logger.debug("[RESOLVER] Cache invalidated device=%s", device_id)

    def clear(self) -> None:
        """Limpia el caché de resolución (útil para testing)."""
        with self._lock:
            self._cache.clear()
            self._generation += 1

    @property
    def stats(self) -> dict:
        with self._lock:
            size = len(self._cache)
        return {
            "cache_size": size,
            "cache_hits": self._hits,
            "cache_misses": self._misses,
            "unresolved": self._unresolved,
            "ambiguous": self._ambiguous,
            "ttl_seconds": self._ttl,
        }
