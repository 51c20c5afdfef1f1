import base64
import hashlib
from http import HTTPStatus

import pytest

from maeve_gateway.message import GatewayMessage
from maeve_gateway.ocpp import ErrorCode, MessageType
from maeve_gateway.registry import ChargeStation, MockRegistry, SecurityProfile
from maeve_gateway.ws import (
    RequestRejected,
    WebsocketHandler,
    check_authorization,
    check_certificate,
    marshal_gateway_message_as_ocpp,
    unmarshal_ocpp_as_gateway_message,
)


def _hash(value: bytes) -> str:
    return base64.b64encode(hashlib.sha256(value).digest()).decode()


def _basic(username: str, secret_value: str) -> str:
    return "Basic " + base64.b64encode(f"{username}:{secret_value}".encode()).decode()


@pytest.fixture
def password():
    return "password"


@pytest.fixture
def registry(password):
    reg = MockRegistry()
    reg.charge_stations["cp001"] = ChargeStation(
        "cp001",
        SecurityProfile.UNSECURED_TRANSPORT_WITH_BASIC_AUTH,
        _hash(password.encode()),
    )
    reg.charge_stations["tls001"] = ChargeStation(
        "tls001", SecurityProfile.TLS_WITH_BASIC_AUTH, _hash(password.encode())
    )
    reg.charge_stations["cs001"] = ChargeStation(
        "cs001", SecurityProfile.TLS_WITH_CLIENT_SIDE_CERTIFICATES
    )
    return reg


@pytest.fixture
def handler(registry):
    return WebsocketHandler(registry, org_names=["Thoughtworks"])


def _cert(org, common_name):
    return {
        "subject": (
            (("organizationName", org),),
            (("commonName", common_name),),
        )
    }


def test_marshal_call_message():
    msg = GatewayMessage(
        message_type=MessageType.CALL,
        action="ActionName",
        message_id="1",
        request_payload="Payload",
    )
    assert marshal_gateway_message_as_ocpp(msg) == '[2,"1","ActionName","Payload"]'


def test_marshal_call_error_message():
    msg = GatewayMessage(
        message_type=MessageType.CALL_ERROR,
        message_id="-1",
        error_code=ErrorCode.RPC_FRAMEWORK_ERROR,
        error_description="websocket message type is not text",
    )
    assert (
        marshal_gateway_message_as_ocpp(msg)
        == '[4,"-1","RpcFrameworkError","websocket message type is not text",{}]'
    )


def test_unmarshal_call_message():
    msg = unmarshal_ocpp_as_gateway_message('[2,"1","ActionName","Payload"]')
    assert msg == GatewayMessage(
        message_type=MessageType.CALL,
        action="ActionName",
        message_id="1",
        request_payload="Payload",
    )


@pytest.mark.parametrize(
    "msg",
    [
        GatewayMessage(MessageType.CALL, action="CSCall", message_id="1234", request_payload={"call": True}),
        GatewayMessage(MessageType.CALL_RESULT, message_id="1234", response_payload={"call": False}),
        GatewayMessage(
            MessageType.CALL_ERROR,
            message_id="4321",
            error_code=ErrorCode.FORMAT_VIOLATION,
            error_description="bad",
        ),
    ],
)
def test_marshal_unmarshal_round_trip(msg):
    assert unmarshal_ocpp_as_gateway_message(marshal_gateway_message_as_ocpp(msg)) == msg


@pytest.mark.parametrize(
    "data",
    [
        "not json",
        "[]",
        '{"type":2}',
        '[2,"1","ActionName"]',
        '[2,"1",7,{}]',
        "[3,\"1\"]",
        '[4,"1","RpcFrameworkError"]',
    ],
)
def test_unmarshal_rejects_bad_frames(data):
    with pytest.raises(ValueError):
        unmarshal_ocpp_as_gateway_message(data)


def test_check_authorization_accepts_matching_credentials(password):
    station = ChargeStation("cp001", SecurityProfile.UNSECURED_TRANSPORT_WITH_BASIC_AUTH, _hash(password.encode()))
    assert check_authorization(_basic("cp001", password), station) is True


def test_check_authorization_rejects_wrong_user_or_secret(password):
    station = ChargeStation("cp001", SecurityProfile.UNSECURED_TRANSPORT_WITH_BASIC_AUTH, _hash(password.encode()))
    assert check_authorization(_basic("cs001", password), station) is False
    assert check_authorization(_basic("cp001", "secret"), station) is False
    assert check_authorization("Basic token", station) is False
    assert check_authorization("Bearer token", station) is False
    assert check_authorization(None, station) is False


def test_check_certificate():
    station = ChargeStation("cs001", SecurityProfile.TLS_WITH_CLIENT_SIDE_CERTIFICATES)
    assert check_certificate(_cert("Thoughtworks", "cs001"), ["Thoughtworks"], station) is True
    assert check_certificate(_cert("Other", "cs001"), ["Thoughtworks"], station) is False
    assert check_certificate(_cert("Thoughtworks", "cs002"), ["Thoughtworks"], station) is False
    assert check_certificate(None, ["Thoughtworks"], station) is False


def test_check_request_accepts_basic_auth_over_plain_transport(handler, password):
    headers = {"Authorization": _basic("cp001", password)}
    assert handler.check_request("/ws/cp001", headers, False, None) == "cp001"


def test_check_request_rejects_basic_auth_profile_over_tls(handler, password):
    headers = {"Authorization": _basic("cp001", password)}
    with pytest.raises(RequestRejected) as excinfo:
        handler.check_request("/ws/cp001", headers, True, None)
    assert excinfo.value.status == HTTPStatus.UNAUTHORIZED


def test_check_request_tls_basic_auth(handler, password):
    headers = {"Authorization": _basic("tls001", password)}
    assert handler.check_request("/ws/tls001", headers, True, None) == "tls001"
    with pytest.raises(RequestRejected) as excinfo:
        handler.check_request("/ws/tls001", headers, False, None)
    assert excinfo.value.status == HTTPStatus.UNAUTHORIZED


def test_check_request_client_certificate(handler):
    assert handler.check_request("/ws/cs001", {}, True, _cert("Thoughtworks", "cs001")) == "cs001"
    with pytest.raises(RequestRejected) as excinfo:
        handler.check_request("/ws/cs001", {}, False, _cert("Thoughtworks", "cs001"))
    assert excinfo.value.status == HTTPStatus.UNAUTHORIZED


def test_check_request_unknown_station(handler):
    with pytest.raises(RequestRejected) as excinfo:
        handler.check_request("/ws/unknown", {}, False, None)
    assert excinfo.value.status == HTTPStatus.NOT_FOUND


def test_check_request_missing_id(handler):
    with pytest.raises(RequestRejected) as excinfo:
        handler.check_request("/ws/", {}, False, None)
    assert excinfo.value.status == HTTPStatus.BAD_REQUEST


def test_handler_requires_registry():
    with pytest.raises(ValueError):
        WebsocketHandler(None)


def test_handler_defaults(registry):
    handler = WebsocketHandler(registry)
    assert [u.hostname for u in handler.mqtt_broker_urls] == ["127.0.0.1"]
    assert handler.mqtt_broker_urls[0].port == 1883
    assert handler.mqtt_keep_alive_interval == 10
    assert handler.pipe_options == {}


def test_handler_keeps_given_broker_urls(registry):
    handler = WebsocketHandler(
        registry, mqtt_broker_urls=["mqtt://127.0.0.1:1883", "mqtt://localhost:1884"]
    )
    assert [u.port for u in handler.mqtt_broker_urls] == [1883, 1884]
    assert handler.mqtt_broker_urls[1].hostname == "localhost"