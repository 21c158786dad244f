"""Gestor de conexión MQTT.

Mantiene una única conexión suscriptora al broker durante toda la vida
del proceso:
- Conexión segura (TLS) con credenciales configuradas
- Suscripción a sensors/+/data en cada (re)conexión
- Reconexión con delay fijo, infinita salvo límite explícito del operador
- Credenciales rechazadas en el arranque → ConfigurationError (fatal)
- Revocación de credenciales a mitad de sesión → se trata como pérdida de
  conexión y se reintenta

No mantiene estado de negocio: cada mensaje se entrega al handler.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import paho.mqtt.client as mqtt

from common.config import MQTTSettings

from .. import metrics
from ..errors import ConfigurationError
from .receiver_stats import ReceiverStats
from .transport import IngestTransport, MessageHandler

logger = logging.getLogger(__name__)

# CONNACK: 4/5 en MQTT 3.1.1, 0x86/0x87 en MQTT 5
AUTH_FAILURE_CODES = frozenset({4, 5, 134, 135})


def _rc_value(rc: Any) -> int:
    value = getattr(rc, "value", rc)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


def _default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        client_id=client_id,
        protocol=mqtt.MQTTv311,
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
    )


class MQTTConnectionManager(IngestTransport):
    """Conexión suscriptora con reconexión automática."""

    def __init__(
        self,
        config: MQTTSettings,
        client_factory: Optional[Callable[[str], Any]] = None,
        on_exhausted: Optional[Callable[[], None]] = None,
    ):
        config.validate()
        self._config = config
        self._client_factory = client_factory or _default_client_factory
        self._on_exhausted = on_exhausted
        self.client_id = f"{config.client_id}-{int(time.time())}"

        self._client: Optional[Any] = None
        self._handler: Optional[MessageHandler] = None
        self._running = False
        self._connected = False
        self._ever_connected = False
        self._exhausted = False
        self._fatal_error: Optional[str] = None
        self._first_result = threading.Event()
        self._consecutive_failures = 0

        self._stats = ReceiverStats()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, handler: MessageHandler) -> None:
        """Conecta y suscribe.

        Si el broker no responde dentro del timeout de arranque, la
        conexión sigue reintentándose en background (no es fatal).
        """
        if self._running:
            return

        self._handler = handler
        self._client = self._client_factory(self.client_id)

        self._client.on_connect = self._on_connect
        self._client.on_connect_fail = self._on_connect_fail
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        if self._config.username and self._config.password:
            self._client.username_pw_set(self._config.username, self._config.password)
        if self._config.tls_enabled:
            self._client.tls_set()

        delay = self._config.reconnect_delay_seconds
        self._client.reconnect_delay_set(min_delay=delay, max_delay=delay)

        logger.info(
            "[MQTT] Connecting to %s:%d tls=%s",
            self._config.broker_host,
            self._config.broker_port,
            self._config.tls_enabled,
        )
        self._running = True
        self._client.connect_async(
            self._config.broker_host,
            self._config.broker_port,
            keepalive=self._config.keepalive,
        )
        self._client.loop_start()

        if not self._first_result.wait(self._config.connect_timeout_seconds):
            logger.warning(
                "[MQTT] Broker not reachable after %.1fs; retrying every %.1fs",
                self._config.connect_timeout_seconds,
                delay,
            )
            return

        if self._fatal_error is not None:
            error = self._fatal_error
            self.stop()
            raise ConfigurationError(error)

    def stop(self) -> None:
        """Detiene el loop de red y desconecta."""
        self._running = False

        if self._client is not None:
            try:
                self._client.loop_stop()
                self._client.disconnect()
            except Exception as e:
                logger.warning("[MQTT] Error stopping: %s", e)

        self._connected = False
        metrics.MQTT_CONNECTED.set(0)
        logger.info("[MQTT] Stopped. %s reconnects=%d", self._stats, self._stats.reconnects)

    # ------------------------------------------------------------------
    # paho callbacks (network loop thread)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        rc = _rc_value(reason_code)

        if rc == 0:
            self._connected = True
            self._consecutive_failures = 0
            if self._ever_connected:
                self._stats.reconnects += 1
                metrics.MQTT_RECONNECTS.inc()
                logger.info("[MQTT] Reconnected to broker (reconnects=%d)", self._stats.reconnects)
            else:
                logger.info("[MQTT] Connected to broker")
            self._ever_connected = True
            metrics.MQTT_CONNECTED.set(1)

            # Re-suscribir en cada conexión: la sesión puede no ser persistente
            client.subscribe(self._config.topic, qos=self._config.qos)
            logger.info("[MQTT] Subscribed to %s qos=%d", self._config.topic, self._config.qos)
            self._first_result.set()
            return

        self._connected = False
        metrics.MQTT_CONNECTED.set(0)

        if rc in AUTH_FAILURE_CODES and not self._ever_connected:
            self._fatal_error = f"MQTT broker rejected credentials (rc={reason_code})"
            logger.error("[MQTT] %s", self._fatal_error)
            self._first_result.set()
            return

        if rc in AUTH_FAILURE_CODES:
            logger.warning("[MQTT] Credentials rejected mid-session (rc=%s); will retry", reason_code)
        else:
            logger.error("[MQTT] Connection refused: rc=%s", reason_code)
        self._register_failure()

    def _on_connect_fail(self, client, userdata):
        logger.warning(
            "[MQTT] Connect attempt to %s:%d failed; retrying in %.1fs",
            self._config.broker_host,
            self._config.broker_port,
            self._config.reconnect_delay_seconds,
        )
        self._register_failure()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        was_connected = self._connected
        self._connected = False
        metrics.MQTT_CONNECTED.set(0)

        if not self._running:
            return
        if was_connected:
            self._stats.disconnects += 1
            logger.warning(
                "[MQTT] Disconnected (rc=%s); reconnecting in %.1fs",
                reason_code,
                self._config.reconnect_delay_seconds,
            )

    def _on_message(self, client, userdata, msg):
        self._stats.received += 1
        self._stats.last_message_at = time.time()
        received_at = datetime.now(timezone.utc)

        if self._handler is None:
            return
        try:
            self._handler(msg.topic, msg.payload, received_at)
        except Exception as e:
            # Nunca propagar al thread de paho
            self._stats.failed += 1
            logger.exception("[MQTT] Handler error topic=%s: %s", msg.topic, e)

    def _register_failure(self) -> None:
        self._consecutive_failures += 1
        limit = self._config.max_reconnect_attempts
        if limit is None or self._consecutive_failures < limit or self._exhausted:
            return

        self._exhausted = True
        self._running = False
        logger.critical(
            "[MQTT] Reconnect attempts exhausted (%d); giving up",
            self._consecutive_failures,
        )
        if self._client is not None:
            try:
                self._client.loop_stop()
            except Exception as e:
                logger.warning("[MQTT] Error stopping loop: %s", e)
        self._first_result.set()
        if self._on_exhausted is not None:
            self._on_exhausted()

    # ------------------------------------------------------------------
    # Estado
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_exhausted(self) -> bool:
        return self._exhausted

    @property
    def reconnect_count(self) -> int:
        return self._stats.reconnects

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "connected": self._connected,
            "exhausted": self._exhausted,
            "broker": f"{self._config.broker_host}:{self._config.broker_port}",
            "topic": self._config.topic,
            "reconnect_count": self._stats.reconnects,
            **self._stats.to_dict(),
        }

    def health_check(self) -> Dict[str, Any]:
        last = self._stats.last_message_at
        return {
            "healthy": self._running and self._connected,
            "running": self._running,
            "connected": self._connected,
            "exhausted": self._exhausted,
            "last_message_age_seconds": time.time() - last if last > 0 else None,
        }
