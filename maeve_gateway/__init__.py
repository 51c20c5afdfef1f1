"""OCPP-J websocket gateway that relays charge station messages to a CSMS over MQTT."""

__version__ = "0.1.0"