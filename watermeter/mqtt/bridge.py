"""MQTT bridge: device requests over the broker, answered by the device gateway.

Devices publish to ``<prefix>/<device_key>/<action>/request`` and receive the
answer on the same topic with ``request`` swapped for ``response``. A
heartbeat on ``<prefix>/<device_key>/heartbeat`` only refreshes last_seen.

Messages are decoded and dispatched on a small thread pool so a slow database
never stalls paho's network loop. A failing message is answered with an error
payload and logged; it never takes the listener down.
"""

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import paho.mqtt.client as mqtt

from watermeter.config import settings
from watermeter.services.errors import SettlementError, ValidationFailed
from watermeter.services.gateway import DeviceGateway, default_gateway
from watermeter.utils.dates import isoformat, utcnow

logger = logging.getLogger(__name__)

REQUEST_ACTIONS = ("auth", "balance/check", "usage/log", "token/validate")


def _stamp(body: dict) -> dict:
    body["timestamp"] = isoformat(utcnow())
    return body


def success_payload(data) -> dict:
    return _stamp({"success": True, "data": data})


def error_payload(message: str, code: str) -> dict:
    return _stamp({"success": False, "error": message, "code": code})


class MqttBridge:
    """Connects the broker to a DeviceGateway."""

    def __init__(self, gateway: DeviceGateway, prefix: str | None = None):
        self.gateway = gateway
        self.prefix = (prefix or settings.mqtt_topic_prefix).strip("/")
        self._client: mqtt.Client | None = None
        self._pool: ThreadPoolExecutor | None = None
        self._connected = threading.Event()
        self._handlers = {
            "auth": lambda key, body: self.gateway.authenticate(key),
            "balance/check": lambda key, body: self.gateway.check_balance(key),
            "usage/log": lambda key, body: self.gateway.log_usage(key, body.get("usage_amount")),
            "token/validate": lambda key, body: self.gateway.redeem_token(key, body.get("token")),
        }

    # --- Topics ---

    @property
    def status_topic(self) -> str:
        return f"{self.prefix}/backend/status"

    def subscriptions(self) -> list[str]:
        topics = [f"{self.prefix}/+/{action}/request" for action in REQUEST_ACTIONS]
        topics.append(f"{self.prefix}/+/heartbeat")
        return topics

    def command_topic(self, device_key: str) -> str:
        return f"{self.prefix}/{device_key}/command"

    @property
    def broadcast_topic(self) -> str:
        return f"{self.prefix}/broadcast/command"

    def parse_topic(self, topic: str) -> tuple[str, str] | None:
        """Split a topic into (device_key, action). Returns None for foreign topics."""
        head = self.prefix + "/"
        if not topic.startswith(head):
            return None
        parts = topic[len(head):].split("/")
        if len(parts) < 2 or not parts[0] or parts[0] == "backend":
            return None
        device_key, tail = parts[0], parts[1:]
        if tail == ["heartbeat"]:
            return device_key, "heartbeat"
        if tail[-1] == "request" and "/".join(tail[:-1]) in REQUEST_ACTIONS:
            return device_key, "/".join(tail[:-1])
        return None

    @staticmethod
    def response_topic(topic: str) -> str:
        head, _, last = topic.rpartition("/")
        return f"{head}/response" if last == "request" else topic

    # --- Dispatch ---

    def handle_message(self, topic: str, raw: bytes) -> tuple[str, dict] | None:
        """Run one inbound message. Returns (topic, payload) to publish, or None."""
        parsed = self.parse_topic(topic)
        if parsed is None:
            logger.debug("Ignoring message on %s", topic)
            return None
        device_key, action = parsed

        if action == "heartbeat":
            try:
                self.gateway.heartbeat(device_key)
            except Exception:
                logger.exception("Heartbeat from %s failed", device_key)
            return None

        reply_to = self.response_topic(topic)
        try:
            body = self._decode(raw)
            data = self._handlers[action](device_key, body)
        except SettlementError as e:
            logger.info("MQTT %s from %s rejected: %s", action, device_key, e.message)
            return reply_to, error_payload(e.message, e.code)
        except Exception:
            logger.exception("MQTT %s from %s failed", action, device_key)
            return reply_to, error_payload("Internal server error", "internal_error")
        return reply_to, success_payload(data)

    @staticmethod
    def _decode(raw: bytes) -> dict:
        if not raw:
            return {}
        try:
            body = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationFailed("Invalid JSON payload")
        if not isinstance(body, dict):
            raise ValidationFailed("Payload must be a JSON object")
        return body

    def _process(self, topic: str, raw: bytes):
        reply = self.handle_message(topic, raw)
        if reply:
            self.publish(*reply)

    # --- paho callbacks ---

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error("MQTT connection refused: %s", reason_code)
            return
        self._connected.set()
        for topic in self.subscriptions():
            client.subscribe(topic, qos=settings.mqtt_qos)
        client.publish(self.status_topic, "online", qos=1, retain=True)
        logger.info(
            "MQTT connected to %s:%d, subscribed under %s/",
            settings.mqtt_host, settings.mqtt_port, self.prefix,
        )

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        self._connected.clear()
        logger.warning("MQTT disconnected: %s", reason_code)

    def _on_message(self, client, userdata, msg):
        if self._pool is None:
            return
        self._pool.submit(self._process, msg.topic, msg.payload)

    # --- Lifecycle ---

    def start(self) -> bool:
        """Connect in the background. Returns False if the client could not be set up."""
        if self._client is not None:
            return True
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=settings.mqtt_client_id,
        )
        if settings.mqtt_username:
            client.username_pw_set(settings.mqtt_username, settings.mqtt_password or None)
        if settings.mqtt_use_tls:
            client.tls_set()
        client.will_set(self.status_topic, "offline", qos=1, retain=True)
        client.reconnect_delay_set(min_delay=1, max_delay=30)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        self._pool = ThreadPoolExecutor(max_workers=settings.mqtt_workers, thread_name_prefix="mqtt")
        try:
            client.connect_async(settings.mqtt_host, settings.mqtt_port, settings.mqtt_keepalive)
            client.loop_start()
        except (OSError, ValueError) as e:
            logger.error("MQTT setup failed: %s", e)
            self._pool.shutdown(wait=False)
            self._pool = None
            return False
        self._client = client
        logger.info("MQTT bridge started")
        return True

    def stop(self):
        client, self._client = self._client, None
        if client is not None:
            # A clean disconnect suppresses the will, so announce it ourselves.
            if self._connected.is_set():
                info = client.publish(self.status_topic, "offline", qos=1, retain=True)
                try:
                    info.wait_for_publish(timeout=2)
                except (RuntimeError, ValueError) as e:
                    logger.warning("Could not publish offline status: %s", e)
            client.disconnect()
            client.loop_stop()
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        self._connected.clear()
        logger.info("MQTT bridge stopped")

    @property
    def connected(self) -> bool:
        return self._client is not None and self._connected.is_set()

    def publish(self, topic: str, payload: dict, retain: bool = False) -> bool:
        if not self.connected:
            logger.warning("MQTT not connected, dropping message for %s", topic)
            return False
        info = self._client.publish(topic, json.dumps(payload), qos=settings.mqtt_qos, retain=retain)
        return info.rc == mqtt.MQTT_ERR_SUCCESS

    def send_command(self, device_key: str, command: str, data: dict | None = None) -> bool:
        """Push an operator command to one device."""
        payload = _stamp({"command": command, "data": data or {}})
        sent = self.publish(self.command_topic(device_key), payload)
        if sent:
            logger.info("Sent command %s to %s", command, device_key)
        return sent

    def broadcast(self, command: str, data: dict | None = None) -> bool:
        """Push an operator command to every device listening on the broadcast topic."""
        payload = _stamp({"command": command, "data": data or {}})
        sent = self.publish(self.broadcast_topic, payload)
        if sent:
            logger.info("Broadcast command %s", command)
        return sent

    def reconnect(self) -> bool:
        """Drop the broker connection and dial again; starts the client if it never ran."""
        if self._client is None:
            return self.start()
        self._connected.clear()
        try:
            self._client.reconnect()
        except (OSError, ValueError) as e:
            logger.error("MQTT reconnect failed: %s", e)
            return False
        logger.info("MQTT reconnect requested")
        return True

    def status(self) -> dict:
        return {
            "enabled": settings.mqtt_enabled,
            "connected": self.connected,
            "broker": f"{settings.mqtt_host}:{settings.mqtt_port}",
            "client_id": settings.mqtt_client_id,
            "topic_prefix": self.prefix,
            "subscriptions": self.subscriptions(),
        }


_bridge: MqttBridge | None = None


def get_bridge() -> MqttBridge:
    global _bridge
    if _bridge is None:
        _bridge = MqttBridge(default_gateway())
    return _bridge
