"""Internal MQTT runtime for publishing dashboard snapshots."""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from pyvalet.exceptions import ValetTransportError


@dataclass(frozen=True)
class MqttTarget:
    """Broker and topic the dashboard is published to."""

    host: str
    port: int
    topic: str
    client_id: str = ""
    username: str | None = None
    password: str | None = None


def build_client_id() -> str:
    return f"pyvalet_{secrets.token_hex(4)}"


class DashboardMqttRuntime:
    """Threaded paho-mqtt runtime publishing retained JSON snapshots."""

    def __init__(
        self,
        *,
        keepalive: int = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        self._keepalive = keepalive
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        self._connected = False
        self._topic: str | None = None

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    @property
    def is_connected(self) -> bool:
        return self._connected

    def start(self, target: MqttTarget) -> None:
        """Connect to the broker and start the network loop thread."""
        self.stop()
        client_id = target.client_id or build_client_id()
        self._logger.debug(
            "MQTT runtime start requested host=%s port=%s topic=%s client_id=%s",
            target.host,
            target.port,
            target.topic,
            client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if target.username:
            client.username_pw_set(target.username, target.password)

        self._topic = target.topic

        def on_connect(
            _c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._connected = True
            self._logger.debug("MQTT connected successfully reason=%s", reason_code)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            self._connected = False
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_disconnect = on_disconnect

        try:
            client.connect(target.host, target.port, keepalive=self._keepalive)
        except OSError as exc:
            raise ValetTransportError(
                f"Cannot reach MQTT broker {target.host}:{target.port}: {exc}",
                endpoint=f"mqtt://{target.host}:{target.port}",
            ) from exc
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def publish(self, payload: dict[str, Any]) -> bool:
        """Queue a retained publish; returns ``False`` when not running."""
        client = self._client
        if client is None or self._topic is None:
            return False
        info = client.publish(self._topic, json.dumps(payload, separators=(",", ":")), qos=1, retain=True)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._logger.warning("MQTT publish to %s failed rc=%s", self._topic, info.rc)
            return False
        return True

    def stop(self) -> None:
        """Stop and disconnect current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        self._connected = False
        self._topic = None

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")
