"""The message exchanged between the gateway and the CSMS over MQTT."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from .ocpp import ErrorCode, MessageType


def _as_message_type(value: Any) -> MessageType | int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"type must be an integer, got {value!r}")
    try:
        return MessageType(value)
    except ValueError:
        return value


def _as_string(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {value!r}")
    return value


def _as_error_code(value: str) -> ErrorCode | str:
    try:
        return ErrorCode(value)
    except ValueError:
        return value


@dataclass
class GatewayMessage:
    """An OCPP message together with the context the CSMS needs to handle it."""

    message_type: MessageType | int
    action: str = ""
    message_id: str = ""
    request_payload: Any = None
    response_payload: Any = None
    error_code: ErrorCode | str = ""
    error_description: str = ""
    state: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object form, leaving out empty optional fields."""
        result: dict[str, Any] = {
            "type": int(self.message_type),
            "action": self.action,
            "id": self.message_id,
        }
        if self.request_payload is not None:
            result["request"] = self.request_payload
        if self.response_payload is not None:
            result["response"] = self.response_payload
        if self.error_code:
            result["error_code"] = str(self.error_code)
        if self.error_description:
            result["error_description"] = self.error_description
        if self.state is not None:
            result["state"] = self.state
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GatewayMessage:
        """Build a message from its JSON object form; raises ValueError on bad fields."""
        if not isinstance(data, dict):
            raise ValueError("gateway message must be a JSON object")
        error_code = _as_string(data, "error_code")
        return cls(
            message_type=_as_message_type(data.get("type")),
            action=_as_string(data, "action"),
            message_id=_as_string(data, "id"),
            request_payload=data.get("request"),
            response_payload=data.get("response"),
            error_code=_as_error_code(error_code) if error_code else "",
            error_description=_as_string(data, "error_description"),
            state=data.get("state"),
        )

    def to_json(self) -> str:
        """Encode the message as compact JSON."""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_json(cls, data: str | bytes) -> GatewayMessage:
        """Decode a message from JSON; raises ValueError on bad input."""
        return cls.from_dict(json.loads(data))