"""Statistics for the MQTT connection manager."""

from __future__ import annotations


class ReceiverStats:
    """Estadísticas del receptor MQTT."""

    def __init__(self):
        self.received = 0
        self.failed = 0
        self.reconnects = 0
        self.disconnects = 0
        self.last_message_at: float = 0

    def __str__(self) -> str:
        return (
            f"Stats: received={self.received} failed={self.failed} "
            f"disconnects={self.disconnects}"
        )

    def to_dict(self) -> dict:
        return {
            "messages_received": self.received,
            "messages_failed": self.failed,
            "disconnects": self.disconnects,
            "last_message_at": self.last_message_at,
        }
