"""IngestTransport - interface base de los transportes de telemetría.

El pipeline solo conoce esta interface; en producción la implementa el
gestor de conexión MQTT y en tests un transporte falso.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, Union

# handler(topic, payload, received_at)
MessageHandler = Callable[[str, Union[bytes, str], datetime], None]


class IngestTransport(ABC):
    """Contrato común de los transportes de ingesta."""

    @abstractmethod
    def start(self, handler: MessageHandler) -> None:
        """Inicia el transporte y entrega cada mensaje a ``handler``.

        Raises:
            ConfigurationError: si la configuración impide arrancar
        """

    @abstractmethod
    def stop(self) -> None:
        """Detiene el transporte gracefully."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @property
    def stats(self) -> Dict[str, Any]:
        return {}
