"""OCPP-J message framing: the JSON array form of Call, CallResult and CallError."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any


class MessageType(IntEnum):
    """The message type id that starts every OCPP-J message."""

    CALL = 2
    CALL_RESULT = 3
    CALL_ERROR = 4


class ErrorCode(str, Enum):
    """Error codes carried by an OCPP-J CallError."""

    FORMAT_VIOLATION = "FormatViolation"
    GENERIC_ERROR = "GenericError"
    INTERNAL_ERROR = "InternalError"
    MESSAGE_TYPE_NOT_SUPPORTED = "MessageTypeNotSupported"
    NOT_IMPLEMENTED = "NotImplemented"
    NOT_SUPPORTED = "NotSupported"
    OCCURRENCE_CONSTRAINT_VIOLATION = "OccurrenceConstraintViolation"
    PROPERTY_CONSTRAINT_VIOLATION = "PropertyConstraintViolation"
    PROTOCOL_ERROR = "ProtocolError"
    RPC_FRAMEWORK_ERROR = "RpcFrameworkError"
    SECURITY_ERROR = "SecurityError"
    TYPE_CONSTRAINT_VIOLATION = "TypeConstraintViolation"

    def __str__(self) -> str:
        return self.value


def _as_message_type(value: Any) -> MessageType | int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"message type must be an integer, got {value!r}")
    try:
        return MessageType(value)
    except ValueError:
        return value


@dataclass
class Message:
    """An OCPP-J message: type id, message id and the remaining array elements."""

    message_type_id: MessageType | int
    message_id: str = ""
    data: list[Any] = field(default_factory=list)

    def to_json(self) -> str:
        """Encode the message as a compact JSON array."""
        frame = [int(self.message_type_id), self.message_id, *self.data]
        return json.dumps(frame, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_json(cls, data: str | bytes) -> Message:
        """Decode a JSON array into a message; raises ValueError on bad input."""
        frame = json.loads(data)
        if not isinstance(frame, list):
            raise ValueError("OCPP-J message must be a JSON array")
        if not frame:
            raise ValueError("no message type")

        message_type = _as_message_type(frame[0])

        message_id = ""
        if len(frame) > 1 and frame[1] is not None:
            if not isinstance(frame[1], str):
                raise ValueError(f"message id must be a string, got {frame[1]!r}")
            message_id = frame[1]

        return cls(message_type, message_id, list(frame[2:]))