# maeve-gateway

The gateway half of a horizontally scalable Charge Station Management System
(CSMS). Charge stations connect to the gateway over OCPP-J websockets; the
gateway publishes their messages to an MQTT broker and delivers messages
published by the CSMS back to the right charge station.

The gateway accepts the `ocpp2.0.1` and `ocpp1.6` websocket subprotocols,
using `ocpp2.0.1` when the charge station asks for neither. For a charge
station with id `<id>` connected with protocol `<protocol>`, messages travel
on these MQTT topics:

- `cs/in/<protocol>/<id>` – messages from the charge station to the CSMS,
  published as JSON with content type `application/json` and the `out`
  topic as response topic
- `cs/out/<protocol>/<id>` – messages from the CSMS to the charge station

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Running the gateway

```
maeve-gateway serve
```

By default this starts:

- an insecure websocket server on `127.0.0.1:9310`, accepting charge stations at `/ws/<id>`
- a status server on `127.0.0.1:9312`, with `/health` (answers `{"status":"OK"}`)
  and `/metrics` (a few process metrics in Prometheus text format)
- for each connected charge station, an MQTT v5 client connecting to
  `mqtt://127.0.0.1:1883`, retried until it succeeds or the websocket closes

Run without a command, `maeve-gateway` prints its help. It runs until one of
its servers fails, then prints the error and exits with status 1.

Options of `serve`:

| Option | Short | Default | Meaning |
| --- | --- | --- | --- |
| `--mqtt-addr` | `-m` | `mqtt://127.0.0.1:1883` | MQTT broker address |
| `--ws-addr` | `-a` | `127.0.0.1:9310` | insecure websocket listen address |
| `--wss-addr` | `-w` | (none) | secure websocket listen address |
| `--status-addr` | `-s` | `127.0.0.1:9312` | status server listen address |
| `--tls-server-cert` | `-c` | (none) | PEM certificate for the TLS server |
| `--tls-server-key` | `-k` | (none) | PEM private key for the TLS server |
| `--tls-trust-cert` | `-t` | (none) | PEM certificate added to the trust store; may be repeated |
| `--org-name` | `-o` | `Thoughtworks` | comma-separated organisation names accepted in client certificates; may be repeated |
| `--cs-password` | | (empty) | password for the basic-auth charge station |

A secure websocket server is started only when `--wss-addr` is given, and it
then requires both `--tls-server-cert` and `--tls-server-key`. It uses TLS 1.2
or later and verifies a client certificate when one is presented:

```
maeve-gateway serve \
    --wss-addr 127.0.0.1:9311 \
    --tls-server-cert server.pem \
    --tls-server-key server.key \
    --tls-trust-cert ca.pem \
    --cs-password password
```

### Known charge stations

The command uses a fixed in-memory registry with these charge stations:

- `cp001` – unsecured transport with HTTP basic auth; the username is the
  charge station id and the password is the one given with `--cs-password`
  (it must connect to the insecure server)
- `cs001`, `cs002`, `cs003` – TLS with client-side certificates; the
  certificate's common name must be the charge station id and one of its
  organisations must be among the `--org-name` values

A request without an id gets `400`, an unknown charge station or path gets
`404`, and failed authentication gets `401`.

## What the package does not do

- It does not answer OCPP messages itself. Something on the MQTT side must
  subscribe to the `cs/in/...` topics and publish replies and calls on the
  `cs/out/...` topics; without it charge station calls go unanswered.
- It does not run an MQTT broker; one must be reachable at `--mqtt-addr`.
- The command has no persistent or configurable charge station registry:
  the stations listed above are the only ones it knows.

## Using it as a library

- `maeve_gateway.ocpp` – `Message` (`to_json`, `from_json`), `MessageType`
  and `ErrorCode`: the OCPP-J wire array `[type, id, ...]`
- `maeve_gateway.message` – `GatewayMessage` (`to_dict`, `from_dict`,
  `to_json`, `from_json`), the JSON document exchanged with the CSMS, with
  fields `type`, `action`, `id` and the optional `request`, `response`,
  `error_code`, `error_description` and `state`
- `maeve_gateway.registry` – `SecurityProfile`, `ChargeStation`, the
  `DeviceRegistry` base class and the dictionary-backed `MockRegistry`
- `maeve_gateway.pipe` – `Pipe`, which brokers calls and call results between
  a charge station and the CSMS on a background thread: one outstanding call
  at a time, CSMS calls buffered while a charge station call is in flight,
  reused charge station message ids dropped, and late charge station
  responses matched to earlier CSMS calls. Feed `charge_station_rx` and
  `csms_rx`, drain `charge_station_tx` and `csms_tx`; it can be used as a
  context manager. Defaults: 10 s response timeout, 10 remembered message
  ids, queues of 5
- `maeve_gateway.server` – `Server`, a threaded WSGI server that reports
  failures on a queue, and the `status_app` WSGI application
- `maeve_gateway.ws` – `WebsocketHandler` (`check_request`, `handle`,
  `serve`), plus `check_authorization`, `check_certificate`,
  `marshal_gateway_message_as_ocpp` and `unmarshal_ocpp_as_gateway_message`
- `maeve_gateway.cli` – the command: `build_registry`, `load_tls_context`,
  `build_parser` and `main`

Converting a raw OCPP-J frame into the gateway's MQTT message and back:

```python
from maeve_gateway.ws import (
    marshal_gateway_message_as_ocpp,
    unmarshal_ocpp_as_gateway_message,
)

msg = unmarshal_ocpp_as_gateway_message(b'[2,"1","Heartbeat",{}]')
print(msg.to_json())   # {"type":2,"action":"Heartbeat","id":"1","request":{}}
frame = marshal_gateway_message_as_ocpp(msg)   # [2,"1","Heartbeat",{}]
```