from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

import paho.mqtt.client as mqtt

_LOGGER = logging.getLogger("knx_bridge.mqtt")

TopicHandler = Callable[[str, str], None]


@dataclass(frozen=True)
class MqttStatus:
    connected: bool
    last_error: str | None
    subscriptions: int


class MqttClient:
    """paho wrapper with per-topic handlers and a retained availability topic.

    Handlers and the connect callback run on paho's network thread.
    """

    def __init__(self, *, host: str, port: int, username: str, password: str, client_id: str):
        self._host = host
        self._port = port
        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        if username:
            self._client.username_pw_set(username, password)

        self._lock = threading.Lock()
        self._connected = False
        self._last_error: str | None = None
        self._handlers: dict[str, TopicHandler] = {}
        self._availability_topic: str | None = None
        self._on_connect_user: Callable[[], None] | None = None

        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    def set_availability(self, topic: str) -> None:
        # Must be called before connect(); the broker publishes "offline" for us on loss.
        self._availability_topic = topic
        self._client.will_set(topic, "offline", qos=1, retain=True)

    def set_connect_handler(self, handler: Callable[[], None] | None) -> None:
        self._on_connect_user = handler

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if getattr(reason_code, "is_failure", False):
            with self._lock:
                self._last_error = f"connect refused: {reason_code}"
            _LOGGER.warning("MQTT connect refused: %s", reason_code)
            return

        with self._lock:
            self._connected = True
            self._last_error = None
            topics = list(self._handlers)
            on_connect_user = self._on_connect_user
        _LOGGER.info("MQTT connected to %s:%s", self._host, self._port)

        if self._availability_topic:
            client.publish(self._availability_topic, "online", qos=1, retain=True)
        for topic in topics:
            client.subscribe(topic, qos=1)
        if on_connect_user is not None:
            try:
                on_connect_user()
            except Exception:
                _LOGGER.exception("MQTT connect handler failed")

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        with self._lock:
            self._connected = False
            if getattr(reason_code, "value", reason_code) != 0:
                self._last_error = f"disconnect reason_code={reason_code}"
        _LOGGER.info("MQTT disconnected (%s)", reason_code)

    def _on_message(self, client, userdata, msg):
        topic = str(msg.topic)
        with self._lock:
            handler = self._handlers.get(topic)
        if handler is None:
            return
        payload = msg.payload.decode("utf-8", errors="replace")
        try:
            handler(topic, payload)
        except Exception:
            # Keep the network thread alive.
            _LOGGER.exception("MQTT handler for %s failed", topic)

    def connect(self) -> None:
        try:
            self._client.reconnect_delay_set(min_delay=1, max_delay=30)
            self._client.connect_async(self._host, self._port, keepalive=30)
            self._client.loop_start()
        except (OSError, ValueError) as e:
            with self._lock:
                self._connected = False
                self._last_error = str(e)
            _LOGGER.error("MQTT connect to %s:%s failed: %s", self._host, self._port, e)

    def disconnect(self) -> None:
        try:
            if self._availability_topic and self.status().connected:
                self._client.publish(self._availability_topic, "offline", qos=1, retain=True)
            self._client.disconnect()
            self._client.loop_stop()
        finally:
            with self._lock:
                self._connected = False

    def status(self) -> MqttStatus:
        with self._lock:
            return MqttStatus(
                connected=self._connected,
                last_error=self._last_error,
                subscriptions=len(self._handlers),
            )

    def publish(self, topic: str, payload: Any, *, retain: bool = False, qos: int = 0) -> None:
        if isinstance(payload, (dict, list)):
            data = json.dumps(payload, ensure_ascii=False)
        else:
            data = str(payload)
        self._client.publish(topic, data, qos=qos, retain=retain)

    def subscribe(self, topic: str, handler: TopicHandler) -> None:
        with self._lock:
            known = topic in self._handlers
            self._handlers[topic] = handler
            connected = self._connected
        if connected and not known:
            self._client.subscribe(topic, qos=1)
