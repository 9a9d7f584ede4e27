"""Cache, aggregate and publish energy meter readings over HTTP, WebSocket, MQTT and InfluxDB."""

__version__ = "0.13.0"