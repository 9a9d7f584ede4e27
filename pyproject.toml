[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mbmd"
version = "0.13.0"
description = "Cache, average and publish energy meter readings over HTTP, WebSocket, MQTT, Homie and InfluxDB"
requires-python = ">=3.10"
keywords = [
    "energy meter",
    "smart meter",
    "mqtt",
    "homie",
    "influxdb",
    "websocket",
    "telemetry",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Home Automation",
    "Topic :: Scientific/Engineering :: Interface Engine/Protocol Translator",
]
dependencies = [
    "paho-mqtt",
    "aiohttp",
    "requests",
    "psutil",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["mbmd"]

[tool.hatch.build.targets.sdist]
include = ["mbmd", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
