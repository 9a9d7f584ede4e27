"""Plain MQTT publishing of measurement results."""

from __future__ import annotations

import dataclasses
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable
from urllib.parse import urlsplit

import paho.mqtt.client as paho

try:
    from paho.mqtt.enums import CallbackAPIVersion
except ImportError:  # older paho-mqtt releases
    CallbackAPIVersion = None

from .snips import QuerySnip

log = logging.getLogger(__name__)

PUBLISH_TIMEOUT = 2.0

_TOPIC_RE = re.compile(r"(\w+)([LTS]\d)", re.ASCII)


def device_topic(device_id: str) -> str:
    """Convert a device id to a topic segment."""
    return device_id.lower().replace("#", "").replace(".", "-")


def topic_from_measurement(measurement: str) -> str:
    """Split phase/tariff measurements like ``VoltageL1`` into ``Voltage/L1``."""
    match = _TOPIC_RE.search(measurement)
    if match is None:
        return measurement
    return f"{match.group(1)}/{match.group(2)}"


@dataclass(frozen=True)
class MqttOptions:
    """Connection options of an MQTT client."""

    broker: str = "tcp://localhost:1883"
    user: str = ""
    password: str = ""
    client_id: str = ""
    clean_session: bool = True
    will: tuple[str, str, int, bool] | None = None


def _address(broker: str) -> tuple[str, int, bool]:
    if "://" not in broker:
        broker = "tcp://" + broker
    parts = urlsplit(broker)
    tls = parts.scheme in ("ssl", "tls", "mqtts")
    return parts.hostname or "localhost", parts.port or (8883 if tls else 1883), tls


def _connect(options: MqttOptions) -> Any:
    kwargs = {"client_id": options.client_id, "clean_session": options.clean_session}
    if CallbackAPIVersion is not None:
        client = paho.Client(CallbackAPIVersion.VERSION2, **kwargs)
    else:
        client = paho.Client(**kwargs)
    if options.user:
        client.username_pw_set(options.user, options.password or None)
    if options.will is not None:
        client.will_set(*options.will)
    host, port, tls = _address(options.broker)
    if tls:
        client.tls_set()
    try:
        client.connect(host, port)
    except (OSError, ValueError) as err:
        raise ConnectionError(f"mqtt: error connecting: {err}") from err
    client.loop_start()
    return client


class MqttClient:
    """MQTT publisher with error logging."""

    def __init__(
        self,
        options: MqttOptions,
        qos: int = 0,
        verbose: bool = False,
        client: Any = None,
    ) -> None:
        self.options = options
        self.qos = qos
        self.verbose = verbose
        if client is None:
            log.info("mqtt: connecting %s at %s", options.client_id, options.broker)
            client = _connect(options)
            if verbose:
                log.info("mqtt: connected")
        self.client = client

    def publish(self, topic: str, retained: bool, message: Any) -> Any:
        """Publish a message and return the publish handle."""
        info = self.client.publish(topic, payload=message, qos=self.qos, retain=retained)
        if self.verbose:
            log.info("mqtt: publish %s, message: %s", topic, message)
        if info.rc:
            log.error("mqtt: error: %s", paho.error_string(info.rc))
        return info

    def wait_for_publish(self, info: Any) -> bool:
        """Wait until a publish completed; return whether it succeeded in time."""
        try:
            info.wait_for_publish(PUBLISH_TIMEOUT)
        except (ValueError, RuntimeError) as err:
            log.error("mqtt: error: %s", err)
            return False
        if not info.is_published():
            if self.verbose:
                log.info("mqtt: timeout")
            return False
        if info.rc:
            log.error("mqtt: error: %s", paho.error_string(info.rc))
            return False
        return True


class MqttRunner(MqttClient):
    """Publishes query snips as plain hierarchical MQTT topics."""

    def __init__(
        self,
        options: MqttOptions,
        qos: int,
        topic: str,
        verbose: bool = False,
        client: Any = None,
    ) -> None:
        options = dataclasses.replace(options, will=(f"{topic}/status", "disconnected", qos, True))
        super().__init__(options, qos, verbose, client)
        self.topic = topic

    def run(self, snips: Iterable[QuerySnip]) -> None:
        """Announce the connection, then publish every snip."""
        self.publish(f"{self.topic}/status", True, "connected")
        for snip in snips:
            subtopic = topic_from_measurement(snip.measurement)
            topic = f"{self.topic}/{device_topic(snip.device)}/{subtopic}"
            self.publish(topic, False, f"{snip.value:.3f}")