[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "maeve-gateway"
version = "0.1.0"
description = "OCPP-J websocket gateway that relays charge station messages to and from a CSMS over MQTT"
requires-python = ">=3.10"
keywords = ["ocpp", "ocpp-j", "csms", "ev-charging", "websocket", "mqtt", "gateway"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Communications",
]
dependencies = [
    "paho-mqtt>=2.0",
    "websockets>=13",
]

[project.optional-dependencies]
test = [
    "pytest>=7",
]

[project.scripts]
maeve-gateway = "maeve_gateway.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["maeve_gateway"]

[tool.hatch.build.targets.sdist]
include = ["maeve_gateway", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
