"""Listen to the scoring server's MQTT broker and feed the event router."""

from __future__ import annotations

import logging
import socket
import threading
import time
from typing import Any, Callable, List, Optional

import paho.mqtt.client as mqtt

from .attempt import EventMalformed
from .event_router import GROUP_DONE, EventRouter, parse_config_payload, parse_start_payload
from .recording_supervisor import SupervisorError

log = logging.getLogger("mqtt_monitor")

DEFAULT_TOPIC_ROOT = "owlcms"
CONFIG_REQUEST = "requesting configuration"
CONFIG_DEDUP_SEC = 1.0
PLATFORM_EVENTS = ("start", "stop", "refereesDecision", "break")


def default_client_id() -> str:
    return f"replays-monitor-{socket.gethostname()}"


class MqttMonitor:
    def __init__(
        self,
        router: EventRouter,
        *,
        host: str,
        port: int = 1883,
        platform: str = "",
        topic_root: str = DEFAULT_TOPIC_ROOT,
        client_id: str | None = None,
        keepalive: int = 60,
        client: Any = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._router = router
        self.host = host
        self.port = int(port)
        self.topic_root = topic_root.strip("/") or DEFAULT_TOPIC_ROOT
        self._keepalive = int(keepalive)
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._platform = (platform or "").strip()
        self._subscribed_platform = ""
        self._last_config_payload: Optional[str] = None
        self._last_config_at = 0.0
        self._client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id or default_client_id(),
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    @property
    def platform(self) -> str:
        with self._lock:
            return self._platform

    def topic(self, *parts: str) -> str:
        return "/".join([self.topic_root, *parts])

    def platform_topics(self, platform: str) -> List[str]:
        topics = [self.topic("fop", event, platform) for event in PLATFORM_EVENTS]
        topics.append(self.topic("fop", "break"))
        return topics

    def start(self) -> None:
        log.info("connecting to MQTT broker %s:%d", self.host, self.port)
        self._client.connect_async(self.host, self.port, self._keepalive)
        self._client.loop_start()

    def stop(self) -> None:
        try:
            self._client.disconnect()
        finally:
            self._client.loop_stop()
        log.info("MQTT monitoring stopped")

    def request_config(self) -> None:
        self._client.publish(self.topic("config"), CONFIG_REQUEST, qos=0)

    def select_platform(self, platform: str) -> None:
        platform = platform.strip()
        with self._lock:
            self._platform = platform
            already = self._subscribed_platform == platform
        if platform and not already:
            self._subscribe_platform(platform)

    # ---- paho callbacks -------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if getattr(reason_code, "is_failure", False):
            log.error("MQTT connection refused: %s", reason_code)
            return
        config_topic = self.topic("fop", "config")
        log.info("subscribing to topic %s", config_topic)
        client.subscribe(config_topic, 0)
        self.request_config()
        with self._lock:
            platform = self._platform
            self._subscribed_platform = ""
        if platform:
            self._subscribe_platform(platform)
        else:
            log.warning("no platform selected; waiting for the platform list")
        log.info("MQTT monitoring started on %s:%d", self.host, self.port)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None) -> None:
        if getattr(reason_code, "is_failure", False):
            log.warning("unexpected MQTT disconnection (%s); paho will reconnect", reason_code)
        else:
            log.info("disconnected from MQTT broker")

    def _on_message(self, client, userdata, message) -> None:
        self.handle_message(message.topic, message.payload)

    # ---- dispatch -------------------------------------------------------------

    def handle_message(self, topic: str, payload: bytes | str) -> None:
        text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else str(payload)
        parts = topic.split("/")
        if len(parts) < 3:
            return
        kind = "/".join(parts[:3])
        try:
            if kind == self.topic("fop", "start"):
                self._handle_start(text)
            elif kind == self.topic("fop", "stop"):
                log.info("handling stop message: %s", text)
                self._router.stop()
            elif kind == self.topic("fop", "refereesDecision"):
                log.info("handling refereesDecision message")
                self._router.decision()
            elif kind == self.topic("fop", "break"):
                self._handle_break(text)
            elif kind == self.topic("fop", "config"):
                self._handle_config(text)
        except EventMalformed as e:
            log.error("ignoring malformed %s message: %s", parts[2], e)
        except SupervisorError as e:
            log.error("failed to start recording: %s", e)

    def _handle_start(self, text: str) -> None:
        log.info("handling start message: %s", text)
        event = parse_start_payload(text, session=self._router.supervisor.current_session)
        if event.timestamp:
            log.debug("start message timestamp %s", event.timestamp)
        self._router.start(event.attempt_id)

    def _handle_break(self, text: str) -> None:
        if text.strip() == GROUP_DONE:
            log.info("session ended")
            self._router.session_end()

    def _handle_config(self, text: str) -> None:
        now = self._monotonic()
        with self._lock:
            if text == self._last_config_payload and now - self._last_config_at < CONFIG_DEDUP_SEC:
                return
            self._last_config_payload = text
            self._last_config_at = now
        config = parse_config_payload(text)
        self._router.set_platforms(config.platforms)

        current = self.platform
        if current and current in config.platforms:
            return
        if len(config.platforms) == 1:
            log.info("automatically selected platform: %s", config.platforms[0])
            self.select_platform(config.platforms[0])
        elif current:
            log.error("platform %r is not served by the broker (available: %s)", current, list(config.platforms))
        else:
            log.warning("several platforms available %s; set broker.platform", list(config.platforms))

    def _subscribe_platform(self, platform: str) -> None:
        for topic in self.platform_topics(platform):
            log.info("subscribing to topic %s", topic)
            self._client.subscribe(topic, 0)
        with self._lock:
            self._subscribed_platform = platform


__all__ = ["MqttMonitor", "default_client_id"]
