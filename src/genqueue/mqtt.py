"""MQTT broadcaster for queue lifecycle events."""
import json
import logging
import time
from typing import Any

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)


class MQTTBroadcaster:
    """Publishes queue item events (queued, processing, completed, failed, cancelled)."""

    def __init__(self, broker: str, port: int, topic: str):
        self.broker: str = broker
        self.port: int = port
        self.topic: str = topic
        self.client: mqtt.Client | None = None
        self.connected: bool = False

    def connect(self) -> bool:
        try:
            self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
            self.client.on_connect = self._on_connect
            self.client.connect(self.broker, self.port, keepalive=60)
            self.client.loop_start()
            self.connected = True
            return True
        except Exception as e:
            logger.warning(f"Failed to connect to MQTT broker: {e}")
            return False

    def disconnect(self) -> None:
        if self.client:
            self.client.loop_stop()
            self.client.disconnect()
            self.connected = False

    def publish_event(self, event_type: str, item_id: int, data: dict[str, Any]) -> bool:
        if not self.connected or not self.client:
            return False
        try:
            payload = {
                "item_id": item_id,
                "event_type": event_type,
                "timestamp": int(time.time() * 1000),
                **data,
            }
            result = self.client.publish(self.topic, json.dumps(payload), qos=1)
            return result.rc == mqtt.MQTT_ERR_SUCCESS
        except Exception as e:
            logger.error(f"Error publishing event: {e}")
            return False

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self.connected = not reason_code.is_failure


class NoOpBroadcaster:
    """Stands in for MQTT when BROADCAST_TYPE is not ``mqtt``; events are dropped."""

    def connect(self) -> bool:
        return True

    def disconnect(self) -> None:
        pass

    def publish_event(self, event_type: str, item_id: int, data: dict[str, Any]) -> bool:
        return True


Broadcaster = MQTTBroadcaster | NoOpBroadcaster

_broadcaster: Broadcaster | None = None


def get_broadcaster(broadcast_type: str, broker: str, port: int, topic: str) -> Broadcaster:
    """Get or create global broadcaster instance."""
    global _broadcaster
    if _broadcaster is not None:
        return _broadcaster

    if broadcast_type == "mqtt":
        _broadcaster = MQTTBroadcaster(broker, port, topic)
    else:
        _broadcaster = NoOpBroadcaster()
    _broadcaster.connect()

    return _broadcaster


def shutdown_broadcaster() -> None:
    """Shutdown global broadcaster."""
    global _broadcaster
    if _broadcaster:
        _broadcaster.disconnect()
        _broadcaster = None
