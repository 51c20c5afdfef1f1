"""The websocket endpoint that connects charge stations to the CSMS over MQTT."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
import queue
import ssl
import threading
from collections.abc import Iterable, Mapping, Sequence
from http import HTTPStatus
from typing import Any
from urllib.parse import SplitResult, unquote, urlsplit

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties
from websockets.asyncio.server import ServerConnection
from websockets.asyncio.server import serve as _ws_serve
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from .message import GatewayMessage
from .ocpp import ErrorCode, Message, MessageType
from .pipe import Pipe
from .registry import ChargeStation, DeviceRegistry, SecurityProfile
from .server import _split_addr

log = logging.getLogger(__name__)

DEFAULT_PROTOCOL = "ocpp2.0.1"
SUBPROTOCOLS = ("ocpp2.0.1", "ocpp1.6")

_DEFAULT_BROKER_URL = "mqtt://127.0.0.1:1883/"
_TLS_SCHEMES = frozenset({"mqtts", "ssl", "tls", "tcps"})
_POLL_INTERVAL = 0.1


class RequestRejected(Exception):
    """An upgrade request refused with an HTTP status."""

    def __init__(self, status: HTTPStatus) -> None:
        super().__init__(f"{status.value} {status.phrase}")
        self.status = status


def check_authorization(authorization: str | None, charge_station: ChargeStation) -> bool:
    """Check a Basic Authorization header against the station's stored password hash."""
    if not authorization:
        return False
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "basic":
        return False
    try:
        decoded = base64.b64decode(credentials, validate=True)
    except ValueError:
        return False
    username, sep, supplied = decoded.partition(b":")
    if not sep or username != charge_station.client_id.encode():
        return False
    digest = base64.b64encode(hashlib.sha256(supplied).digest())
    return hmac.compare_digest(digest, charge_station.base64_sha256_password.encode())


def check_certificate(
    peer_certificate: Mapping[str, Any] | None,
    org_names: Iterable[str],
    charge_station: ChargeStation,
) -> bool:
    """Check a verified client certificate's organisation and common name."""
    if not peer_certificate:
        return False
    attributes = [
        (key, value) for rdn in peer_certificate.get("subject", ()) for key, value in rdn
    ]
    allowed = set(org_names)
    organisations = [value for key, value in attributes if key == "organizationName"]
    if not any(org in allowed for org in organisations):
        log.info("certificate organisations %s not in %s", organisations, sorted(allowed))
        return False
    common_names = [value for key, value in attributes if key == "commonName"]
    common_name = common_names[-1] if common_names else ""
    log.info("Client Id: %s", common_name)
    return charge_station.client_id == common_name


def marshal_gateway_message_as_ocpp(msg: GatewayMessage) -> str:
    """Encode a gateway message as an OCPP-J frame for the charge station."""
    if msg.message_type == MessageType.CALL:
        data: list[Any] = [msg.action, msg.request_payload]
    elif msg.message_type == MessageType.CALL_RESULT:
        data = [msg.response_payload]
    elif msg.message_type == MessageType.CALL_ERROR:
        data = [str(msg.error_code), msg.error_description, {}]
    else:
        data = []
    return Message(msg.message_type, msg.message_id, data).to_json()


def _string_field(value: Any, name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {value!r}")
    return value


def _require_elements(frame: Message, count: int) -> None:
    if len(frame.data) < count:
        raise ValueError(
            f"message {frame.message_id!r} has {len(frame.data)} payload elements, "
            f"expected {count}"
        )


def unmarshal_ocpp_as_gateway_message(data: str | bytes) -> GatewayMessage:
    """Decode an OCPP-J frame from a charge station; raises ValueError on bad input."""
    frame = Message.from_json(data)
    msg = GatewayMessage(message_type=frame.message_type_id, message_id=frame.message_id)
    if frame.message_type_id == MessageType.CALL:
        _require_elements(frame, 2)
        msg.action = _string_field(frame.data[0], "action")
        msg.request_payload = frame.data[1]
    elif frame.message_type_id == MessageType.CALL_RESULT:
        _require_elements(frame, 1)
        msg.response_payload = frame.data[0]
    elif frame.message_type_id == MessageType.CALL_ERROR:
        _require_elements(frame, 2)
        code = _string_field(frame.data[0], "error code")
        try:
            msg.error_code = ErrorCode(code)
        except ValueError:
            msg.error_code = code
        msg.error_description = _string_field(frame.data[1], "error description")
    return msg


def _rpc_error(description: str) -> GatewayMessage:
    return GatewayMessage(
        message_type=MessageType.CALL_ERROR,
        message_id="-1",
        error_code=ErrorCode.RPC_FRAMEWORK_ERROR,
        error_description=description,
    )


def _client_id_from_path(path: str) -> str:
    path = path.split("?", 1)[0]
    if not path.startswith("/ws/"):
        raise RequestRejected(HTTPStatus.NOT_FOUND)
    raw_id = path[len("/ws/"):]
    if "/" in raw_id:
        raise RequestRejected(HTTPStatus.NOT_FOUND)
    if not raw_id:
        raise RequestRejected(HTTPStatus.BAD_REQUEST)
    return unquote(raw_id)


def _select_subprotocol(
    connection: ServerConnection, subprotocols: Sequence[str]
) -> str | None:
    return next((p for p in SUBPROTOCOLS if p in subprotocols), None)


def _put_until(channel: Any, msg: GatewayMessage, stopped: threading.Event) -> bool:
    while not stopped.is_set():
        try:
            channel.put(msg, timeout=_POLL_INTERVAL)
            return True
        except queue.Full:
            continue
    return False


class WebsocketHandler:
    """Accepts charge station websockets and relays their messages over MQTT."""

    def __init__(
        self,
        device_registry: DeviceRegistry,
        mqtt_broker_urls: Iterable[str | SplitResult] = (),
        mqtt_topic_prefix: str = "",
        mqtt_connect_timeout: float = 5.0,
        mqtt_connect_retry_delay: float = 1.0,
        mqtt_keep_alive_interval: float = 10,
        org_names: Iterable[str] = (),
        pipe_options: Mapping[str, Any] | None = None,
    ) -> None:
        if device_registry is None:
            raise ValueError("must provide device registry implementation")
        self.device_registry = device_registry
        urls = [urlsplit(u) if isinstance(u, str) else u for u in mqtt_broker_urls]
        self.mqtt_broker_urls = urls or [urlsplit(_DEFAULT_BROKER_URL)]
        self.mqtt_topic_prefix = mqtt_topic_prefix
        self.mqtt_connect_timeout = mqtt_connect_timeout or 5.0
        self.mqtt_connect_retry_delay = mqtt_connect_retry_delay or 1.0
        self.mqtt_keep_alive_interval = int(round(mqtt_keep_alive_interval)) or 10
        self.org_names = list(org_names)
        self.pipe_options = dict(pipe_options or {})

    # -- admission -----------------------------------------------------------------

    def check_request(
        self,
        path: str,
        headers: Mapping[str, str],
        secure: bool,
        peer_certificate: Mapping[str, Any] | None = None,
    ) -> str:
        """Return the client id of an acceptable request; raise RequestRejected otherwise."""
        client_id = _client_id_from_path(path)
        station = self.device_registry.lookup_charge_station(client_id)
        if station is None:
            raise RequestRejected(HTTPStatus.NOT_FOUND)

        profile = station.security_profile
        if profile == SecurityProfile.UNSECURED_TRANSPORT_WITH_BASIC_AUTH:
            accepted = not secure and check_authorization(headers.get("Authorization"), station)
        elif profile == SecurityProfile.TLS_WITH_BASIC_AUTH:
            accepted = secure and check_authorization(headers.get("Authorization"), station)
        elif profile == SecurityProfile.TLS_WITH_CLIENT_SIDE_CERTIFICATES:
            accepted = secure and check_certificate(peer_certificate, self.org_names, station)
        else:
            accepted = False
        if not accepted:
            raise RequestRejected(HTTPStatus.UNAUTHORIZED)
        return client_id

    def _process_request(self, connection: ServerConnection, request: Any) -> Any:
        ssl_object = connection.transport.get_extra_info("ssl_object")
        peer_certificate = ssl_object.getpeercert() if ssl_object is not None else None
        try:
            self.check_request(request.path, request.headers, ssl_object is not None, peer_certificate)
        except RequestRejected as err:
            return connection.respond(err.status, f"{err.status.phrase}\n")
        return None

    # -- serving -------------------------------------------------------------------

    async def serve(self, addr: str, ssl_context: ssl.SSLContext | None = None) -> None:
        """Listen for charge station websockets on ``addr`` until cancelled."""
        host, port, _ = _split_addr(addr)
        async with _ws_serve(
            self.handle,
            host or None,
            port,
            process_request=self._process_request,
            select_subprotocol=_select_subprotocol,
            ssl=ssl_context,
        ) as server:
            log.info("websocket server listening on %s", addr)
            await server.serve_forever()

    async def handle(self, connection: ServerConnection) -> None:
        """Relay one charge station connection until it closes."""
        client_id = _client_id_from_path(connection.request.path)
        protocol = connection.subprotocol or DEFAULT_PROTOCOL
        in_topic = f"{self.mqtt_topic_prefix}/in/{protocol}/{client_id}"
        out_topic = f"{self.mqtt_topic_prefix}/out/{protocol}/{client_id}"

        stopped = threading.Event()
        with Pipe(**self.pipe_options) as pipe:
            client = await self._connect_mqtt(
                connection, client_id, out_topic, pipe, stopped
            )
            if client is None:
                return
            try:
                tasks = [
                    asyncio.create_task(self._publish_to_csms(pipe, client, in_topic, out_topic)),
                    asyncio.create_task(self._write_to_charge_station(pipe, connection)),
                ]
                try:
                    await self._read_from_charge_station(connection, pipe)
                finally:
                    for task in tasks:
                        task.cancel()
                    await asyncio.gather(*tasks, return_exceptions=True)
                log.info("websocket handler complete")
            finally:
                stopped.set()
                client.disconnect()
                client.loop_stop()

    # -- MQTT ----------------------------------------------------------------------

    def _new_mqtt_client(
        self,
        url: SplitResult,
        client_id: str,
        out_topic: str,
        pipe: Pipe,
        connection: ServerConnection,
        loop: asyncio.AbstractEventLoop,
        connected: threading.Event,
        stopped: threading.Event,
    ) -> mqtt.Client:
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, protocol=mqtt.MQTTv5
        )
        client.connect_timeout = self.mqtt_connect_timeout
        client.reconnect_delay_set(
            min_delay=self.mqtt_connect_retry_delay, max_delay=self.mqtt_connect_retry_delay
        )
        if url.scheme in _TLS_SCHEMES:
            client.tls_set()
        if url.username:
            client.username_pw_set(unquote(url.username), unquote(url.password or ""))

        def on_connect(client, userdata, flags, reason_code, properties):
            if reason_code.is_failure:
                log.warning("mqtt connection refused: %s", reason_code)
                return
            log.info("connection up....")
            connected.set()
            result, _ = client.subscribe(out_topic)
            if result != mqtt.MQTT_ERR_SUCCESS:
                log.error("subscribing to mqtt topic %s: %s", out_topic, mqtt.error_string(result))
                asyncio.run_coroutine_threadsafe(
                    connection.close(1002, HTTPStatus.INTERNAL_SERVER_ERROR.phrase), loop
                )

        def on_message(client, userdata, message):
            try:
                msg = GatewayMessage.from_json(message.payload)
            except ValueError as err:
                log.error("unmarshalling CSMS message: %s", err)
                return
            _put_until(pipe.csms_rx, msg, stopped)

        def on_disconnect(client, userdata, flags, reason_code, properties):
            connected.clear()
            log.info("server disconnect: %s", reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect
        return client

    def _start_mqtt(self, client: mqtt.Client, url: SplitResult, connected: threading.Event) -> None:
        default_port = 8883 if url.scheme in _TLS_SCHEMES else 1883
        client.connect(
            url.hostname or "127.0.0.1",
            url.port or default_port,
            keepalive=self.mqtt_keep_alive_interval,
        )
        client.loop_start()
        if not connected.wait(self.mqtt_connect_timeout):
            client.disconnect()
            client.loop_stop()
            raise TimeoutError(f"no connection acknowledgement from {url.geturl()}")

    async def _connect_mqtt(
        self,
        connection: ServerConnection,
        client_id: str,
        out_topic: str,
        pipe: Pipe,
        stopped: threading.Event,
    ) -> mqtt.Client | None:
        loop = asyncio.get_running_loop()
        while connection.state is not State.CLOSED:
            for url in self.mqtt_broker_urls:
                connected = threading.Event()
                client = self._new_mqtt_client(
                    url, client_id, out_topic, pipe, connection, loop, connected, stopped
                )
                try:
                    await asyncio.to_thread(self._start_mqtt, client, url, connected)
                except (OSError, TimeoutError, ValueError) as err:
                    log.warning("connecting to mqtt on %s: %s", url.geturl(), err)
                    continue
                return client
            await asyncio.sleep(self.mqtt_connect_retry_delay)
        log.warning("websocket closed before mqtt connection was made")
        return None

    async def _publish_to_csms(
        self, pipe: Pipe, client: mqtt.Client, in_topic: str, out_topic: str
    ) -> None:
        while True:
            try:
                msg = await asyncio.to_thread(pipe.csms_tx.get, _POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                payload = msg.to_json()
            except (TypeError, ValueError) as err:
                log.error("marshaling message for publication: %s", err)
                continue
            properties = Properties(PacketTypes.PUBLISH)
            properties.ContentType = "application/json"
            properties.ResponseTopic = out_topic
            info = client.publish(in_topic, payload, properties=properties)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                log.error("publishing message: %s", mqtt.error_string(info.rc))

    # -- websocket -------------------------------------------------------------------

    async def _write_to_charge_station(self, pipe: Pipe, connection: ServerConnection) -> None:
        while True:
            try:
                msg = await asyncio.to_thread(pipe.charge_station_tx.get, _POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                data = marshal_gateway_message_as_ocpp(msg)
            except (TypeError, ValueError) as err:
                log.error("marshaling gateway message for charge station: %s", err)
                continue
            try:
                await connection.send(data)
            except ConnectionClosed as err:
                log.warning("writing to charge station: %s", err)

    async def _read_from_charge_station(self, connection: ServerConnection, pipe: Pipe) -> None:
        try:
            async for data in connection:
                if isinstance(data, bytes):
                    msg, channel = _rpc_error("websocket message type is not text"), pipe.charge_station_tx
                else:
                    try:
                        msg, channel = unmarshal_ocpp_as_gateway_message(data), pipe.charge_station_rx
                    except ValueError as err:
                        msg, channel = _rpc_error(str(err)), pipe.charge_station_tx
                await asyncio.to_thread(channel.put, msg)
        except ConnectionClosed as err:
            code = err.rcvd.code if err.rcvd is not None else None
            log.info("connection closed with status %s", code)
            return
        log.info("connection closed")