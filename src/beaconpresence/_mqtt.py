"""MQTT event sink."""

from __future__ import annotations

import json
import logging
import secrets
from collections.abc import Callable
from typing import Any, cast

import paho.mqtt.client as mqtt

from beaconpresence.config import PresenceConfig
from beaconpresence.exceptions import PublishError
from beaconpresence.state.events import DetectionEvent


def build_mqtt_message(topic_prefix: str, event_type: str, payload: DetectionEvent) -> tuple[str, str]:
    """Return ``(topic, body)`` for one event.

    Topic: ``<prefix>/<agentId>/<eventType>``.
    Body: ``{"type": <event_type>, "payload": <event JSON>}``.
    """
    topic = f"{topic_prefix.rstrip('/')}/{payload.agent_id}/{payload.event_type.value}"
    body = json.dumps(
        {
            "type": event_type,
            "payload": payload.model_dump(mode="json", by_alias=True),
        },
        separators=(",", ":"),
    )
    return topic, body


def _default_client(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
        client_id=client_id,
        protocol=mqtt.MQTTv311,
    )


class MqttEventPublisher:
    """Threaded paho-mqtt publisher.

    The paho network loop runs in its own thread; :meth:`publish` only
    enqueues the message, so it never blocks the event loop.  Delivery
    is at-most-once (QoS 0).
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 1883,
        topic_prefix: str = "beacons/presence",
        username: str | None = None,
        password: str | None = None,
        tls: bool = False,
        keepalive: int = 60,
        client_factory: Callable[[str], mqtt.Client] = _default_client,
        logger: logging.Logger | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._topic_prefix = topic_prefix
        self._username = username
        self._password = password
        self._tls = tls
        self._keepalive = keepalive
        self._client_factory = client_factory
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False

    @classmethod
    def from_config(cls, config: PresenceConfig, **kwargs: Any) -> MqttEventPublisher:
        return cls(
            host=config.mqtt_host,
            port=config.mqtt_port,
            topic_prefix=config.mqtt_topic,
            username=config.mqtt_username,
            password=config.mqtt_password,
            tls=config.mqtt_tls,
            keepalive=config.mqtt_keepalive,
            **kwargs,
        )

    @property
    def is_running(self) -> bool:
        """Whether the MQTT network loop is running."""
        return self._running

    def start(self) -> None:
        """Connect to the broker and start the network loop thread."""
        self.stop()
        client_id = f"beaconpresence-{secrets.token_hex(4)}"
        self._logger.debug(
            "MQTT publisher start requested host=%s port=%s prefix=%s client_id=%s",
            self._host,
            self._port,
            self._topic_prefix,
            client_id,
        )

        client = self._client_factory(client_id)
        client.enable_logger(self._logger)
        if self._username:
            client.username_pw_set(self._username, self._password)
        if self._tls:
            client.tls_set()

        def on_connect(
            _c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.is_failure:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.debug("MQTT connected reason=%s", reason_code)

        def on_disconnect(
            _c: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_disconnect = on_disconnect

        client.connect(self._host, self._port, keepalive=self._keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Disconnect and stop the network loop if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")

    async def publish(self, event_type: str, payload: DetectionEvent) -> None:
        client = self._client
        if client is None:
            raise PublishError("MQTT publisher is not running")
        topic, body = build_mqtt_message(self._topic_prefix, event_type, payload)
        info = client.publish(topic, body, qos=0)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(f"MQTT publish to {topic} failed: {mqtt.error_string(info.rc)}")
        self._logger.debug("Published %s to %s", payload.event_type, topic)
