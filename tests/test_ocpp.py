import pytest

from maeve_gateway.ocpp import ErrorCode, Message, MessageType


def test_message_can_be_marshaled_to_json():
    msg = Message(MessageType.CALL, "1", ["ActionName", "Payload"])
    assert msg.to_json() == '[2,"1","ActionName","Payload"]'


def test_message_can_be_unmarshaled_from_json():
    got = Message.from_json(b'[2,"1","ActionName","Payload"]')
    want = Message(MessageType.CALL, "1", ["ActionName", "Payload"])
    assert got == want
    assert got.message_type_id is MessageType.CALL


def test_round_trip_with_object_payload():
    msg = Message(MessageType.CALL_RESULT, "abc", [{"status": "Accepted", "n": [1, 2]}])
    assert Message.from_json(msg.to_json()) == msg


def test_unmarshal_type_only_has_no_id_or_data():
    got = Message.from_json("[3]")
    assert got.message_type_id == MessageType.CALL_RESULT
    assert got.message_id == ""
    assert got.data == []


def test_empty_array_has_no_message_type():
    with pytest.raises(ValueError, match="no message type"):
        Message.from_json("[]")


@pytest.mark.parametrize("text", ['{"a":1}', '"x"', "not json"])
def test_non_array_is_rejected(text):
    with pytest.raises(ValueError):
        Message.from_json(text)


@pytest.mark.parametrize("text", ['["2","1"]', "[2.5,\"1\"]", "[true,\"1\"]"])
def test_message_type_must_be_integer(text):
    with pytest.raises(ValueError):
        Message.from_json(text)


def test_message_id_must_be_string():
    with pytest.raises(ValueError):
        Message.from_json("[2,1]")


def test_error_code_values():
    assert ErrorCode.RPC_FRAMEWORK_ERROR == "RpcFrameworkError"
    assert ErrorCode("FormatViolation") is ErrorCode.FORMAT_VIOLATION