"""Publishing of measurement results following the Homie IoT convention."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from typing import Any, Callable, Iterable, Mapping

from .mqtt import MqttClient, MqttOptions, device_topic
from .snips import ControlSnip, QuerySnip
from .status import DeviceDescriptor, DeviceInfo

log = logging.getLogger(__name__)

SPEC_VERSION = "4.0"
NODE_TOPIC = "meter"
TIMEOUT = 0.5


class HomieMeter:
    """A single Homie device publishing on its own MQTT client."""

    def __init__(
        self,
        client: MqttClient,
        root_topic: str,
        meter: str,
        timeout: float = TIMEOUT,
        units: Mapping[str, str] | None = None,
    ) -> None:
        self.client = client
        self.root_topic = root_topic
        self.meter = meter
        self.timeout = timeout
        self.online = False
        self.observed: dict[str, str] = {}
        self._units = dict(units or {})

    def _publish(self, subtopic: str, message: str) -> None:
        self.client.publish(f"{self.root_topic}/{subtopic}", True, message)

    def publish_meter(self, descriptor: DeviceDescriptor) -> None:
        """Publish device and node attributes."""
        subtopic = device_topic(self.meter)

        self._publish(f"{subtopic}/$homie", SPEC_VERSION)
        self._publish(f"{subtopic}/$name", self.meter)
        self._publish(f"{subtopic}/$state", "init")
        self._publish(f"{subtopic}/$implementation", "MBMD")

        self._publish(f"{subtopic}/$nodes", NODE_TOPIC)
        self.unpublish(subtopic, NODE_TOPIC, "$homie", "$name", "$state", "$nodes")

        subtopic = f"{subtopic}/{NODE_TOPIC}"
        self._publish(f"{subtopic}/$name", descriptor.manufacturer)
        self._publish(f"{subtopic}/$type", descriptor.model)

    def status(self, online: bool) -> None:
        """Update the device state when its online status changes."""
        if self.online != online:
            state = "ready" if online else "alert"
            self._publish(f"{device_topic(self.meter)}/$state", state)
            self.online = online

    def publish_message(self, snip: QuerySnip) -> None:
        """Publish a value, announcing its property first if it is new."""
        if snip.measurement not in self.observed:
            self.observed[snip.measurement] = snip.description
            self.publish_properties()

        topic = "/".join(
            (self.root_topic, device_topic(snip.device), NODE_TOPIC, snip.measurement.lower())
        )
        self.client.publish(topic, False, f"{snip.value:.3f}")

    def publish_properties(self) -> None:
        """Publish attributes of all observed properties and clear stale ones."""
        subtopic = f"{device_topic(self.meter)}/{NODE_TOPIC}"
        properties = []
        for measurement in sorted(self.observed):
            prop = measurement.lower()
            properties.append(prop)
            prop_topic = f"{subtopic}/{prop}"
            self._publish(f"{prop_topic}/$name", self.observed[measurement])
            self._publish(f"{prop_topic}/$unit", self._units.get(measurement, ""))
            self._publish(f"{prop_topic}/$datatype", "float")

        self._publish(f"{subtopic}/$properties", ",".join(properties))
        self.unpublish(subtopic, "$name", "$unit", "$datatype", "$properties", *properties)

    def unpublish(self, subtopic: str, *args: str) -> None:
        """Clear retained messages below ``subtopic`` except the given children."""
        topic = f"{self.root_topic}/{subtopic}/#"
        if self.client.verbose:
            log.info("mqtt: unpublish %s", topic)

        kept = [f"{self.root_topic}/{subtopic}/{exception}" for exception in args]
        lock = threading.Lock()
        pending: list[Any] = []
        paho_client = self.client.client

        def on_message(_client: Any, _userdata: Any, msg: Any) -> None:
            if not msg.payload:
                return  # our own clearing messages
            if any(msg.topic == k or msg.topic.startswith(k + "/") for k in kept):
                return
            info = paho_client.publish(msg.topic, payload=b"", qos=self.client.qos, retain=True)
            with lock:
                pending.append(info)

        paho_client.message_callback_add(topic, on_message)
        paho_client.subscribe(topic, self.client.qos)
        time.sleep(self.timeout)
        paho_client.unsubscribe(topic)
        paho_client.message_callback_remove(topic)

        with lock:
            infos = list(pending)
        for info in infos:
            self.client.wait_for_publish(info)

    def unregister(self) -> None:
        """Mark the device disconnected and close its connection."""
        self._publish(f"{device_topic(self.meter)}/$state", "disconnected")
        self.client.client.disconnect()
        self.client.client.loop_stop()


class HomieRunner:
    """Publishes query snips as Homie devices, one MQTT client per device."""

    def __init__(
        self,
        device_info: DeviceInfo,
        options: MqttOptions,
        qos: int,
        root_topic: str,
        verbose: bool = False,
        *,
        timeout: float = TIMEOUT,
        units: Mapping[str, str] | None = None,
        client_factory: Callable[[MqttOptions], MqttClient] | None = None,
    ) -> None:
        self.device_info = device_info
        self.options = options
        self.qos = qos
        self.root_topic = root_topic
        self.verbose = verbose
        self.timeout = timeout
        self._units = dict(units or {})
        self._client_factory = client_factory or (
            lambda opts: MqttClient(opts, self.qos, self.verbose)
        )
        self.meters: dict[str, HomieMeter] = {}
        self._lock = threading.Lock()

    def _create_meter(self, snip: QuerySnip) -> HomieMeter:
        topic = device_topic(snip.device)
        options = dataclasses.replace(
            self.options,
            client_id=f"{self.options.client_id}-{topic}",
            will=(f"{self.root_topic}/{topic}/$state", "lost", self.qos, True),
        )
        client = self._client_factory(options)
        meter = HomieMeter(client, self.root_topic, snip.device, self.timeout, self._units)
        meter.publish_meter(self.device_info.device_descriptor_by_id(snip.device))
        with self._lock:
            self.meters[snip.device] = meter
        return meter

    def handle_control(self, snip: ControlSnip) -> None:
        """Reflect a device's online status in its Homie state."""
        with self._lock:
            meter = self.meters.get(snip.device)
        if meter is not None:
            meter.status(snip.status.online)

    def run(self, snips: Iterable[QuerySnip]) -> None:
        """Publish every snip; unregister all devices when the source ends."""
        try:
            for snip in snips:
                with self._lock:
                    meter = self.meters.get(snip.device)
                if meter is None:
                    meter = self._create_meter(snip)
                meter.publish_message(snip)
        finally:
            with self._lock:
                meters = list(self.meters.values())
            for meter in meters:
                meter.unregister()