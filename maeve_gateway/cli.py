"""Command line entry point: the ``csms serve`` command that runs the gateway."""

from __future__ import annotations

import argparse
import asyncio
import base64
import hashlib
import logging
import queue
import ssl
import sys
from collections.abc import Sequence
from pathlib import Path
from urllib.parse import urlsplit

from .registry import ChargeStation, MockRegistry, SecurityProfile
from .server import Server, status_app
from .ws import WebsocketHandler

log = logging.getLogger(__name__)

_DESCRIPTION = """\
Provides a Charge Station Management System that is horizontally
scalable. There are two core components, the gateway accepts
connections from charge stations and forwards messages to/from
an MQTT broker. The manager reads messages from the MQTT broker,
implements any logic and determines the appropriate response.
The manager can also initiate a request to the charge station
and receive the response."""

_DEFAULT_ORG_NAMES = ["Thoughtworks"]
_POLL_INTERVAL = 0.2
_PEM_CERTIFICATE_MARKER = "-----BEGIN CERTIFICATE-----"


def build_registry(cs_password: str) -> MockRegistry:
    """Return the in-memory registry of the charge stations the gateway accepts."""
    digest = base64.b64encode(hashlib.sha256(cs_password.encode()).digest()).decode()
    registry = MockRegistry()
    registry.charge_stations["cp001"] = ChargeStation(
        client_id="cp001",
        security_profile=SecurityProfile.UNSECURED_TRANSPORT_WITH_BASIC_AUTH,
        base64_sha256_password=digest,
    )
    for client_id in ("cs001", "cs002", "cs003"):
        registry.charge_stations[client_id] = ChargeStation(
            client_id=client_id,
            security_profile=SecurityProfile.TLS_WITH_CLIENT_SIDE_CERTIFICATES,
        )
    return registry


def load_tls_context(
    cert_file: str, key_file: str, trust_cert_files: Sequence[str]
) -> ssl.SSLContext:
    """Build the server TLS context; raises ValueError describing what went wrong."""
    if not cert_file:
        raise ValueError("no tls server cert specified for wss connection")
    if not key_file:
        raise ValueError("no tls server key specified for wss connection")

    try:
        Path(cert_file).read_bytes()
    except OSError as err:
        raise ValueError(f"reading tls cert from {cert_file}: {err}") from err
    try:
        Path(key_file).read_bytes()
    except OSError as err:
        raise ValueError(f"reading tls key from {key_file}: {err}") from err

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    try:
        context.load_cert_chain(cert_file, key_file)
    except (ssl.SSLError, OSError) as err:
        raise ValueError(f"processing tls key pair: {err}") from err

    for trust_file in trust_cert_files:
        try:
            pem = Path(trust_file).read_text(encoding="ascii", errors="replace")
        except OSError as err:
            raise ValueError(f"reading trusted certs from {trust_file}: {err}") from err
        if _PEM_CERTIFICATE_MARKER not in pem:
            raise ValueError(f"processing trusted certs from {trust_file}: no certificate found")
        try:
            context.load_verify_locations(cadata=pem)
        except (ssl.SSLError, ValueError) as err:
            raise ValueError(
                f"processing trusted certs from {trust_file}: no certificate found"
            ) from err

    # a client certificate is verified when one is presented, but not required
    context.verify_mode = ssl.CERT_OPTIONAL
    return context


class _CommaListAction(argparse.Action):
    """Collect comma-separated values; the first use replaces the default."""

    def __call__(self, parser, namespace, values, option_string=None):
        current = getattr(namespace, self.dest, None)
        if current is None or current is self.default:
            current = []
        setattr(namespace, self.dest, [*current, *values.split(",")])


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the ``csms`` command."""
    parser = argparse.ArgumentParser(
        prog="csms",
        description="Charge Station Management System\n\n" + _DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    commands = parser.add_subparsers(dest="command", title="commands")

    serve = commands.add_parser("serve", help="Start the gateway server")
    serve.add_argument(
        "-m", "--mqtt-addr", default="mqtt://127.0.0.1:1883",
        help="The address of the MQTT broker, e.g. mqtt://127.0.0.1:1883",
    )
    serve.add_argument(
        "-a", "--ws-addr", default="127.0.0.1:9310",
        help="The address that the insecure websocket server will listen on for "
        "connections, e.g. 127.0.0.1:9310",
    )
    serve.add_argument(
        "-w", "--wss-addr", default="",
        help="The address that the secure websocket server will listen on for "
        "connections, e.g. 127.0.0.1:9311",
    )
    serve.add_argument(
        "-s", "--status-addr", default="127.0.0.1:9312",
        help="The address that the status server will listen on for connections, "
        "e.g. 127.0.0.1:9312",
    )
    serve.add_argument(
        "-c", "--tls-server-cert", default="",
        help="A file that contains a PEM encoded certificate to use as the TLS server cert",
    )
    serve.add_argument(
        "-k", "--tls-server-key", default="",
        help="A file that contains a PEM encoded private key to use as the TLS server key",
    )
    serve.add_argument(
        "-t", "--tls-trust-cert", action="append", default=[],
        help="A file that contains a PEM encoded certificate to add to the TLS trust store",
    )
    serve.add_argument(
        "-o", "--org-name", action=_CommaListAction, default=list(_DEFAULT_ORG_NAMES),
        help="A comma-separated list of organisation names that are valid in client "
        "certificates",
    )
    serve.add_argument(
        "--cs-password", default="",
        help="The password to use for the charge station",
    )
    return parser


async def _run_servers(
    handler: WebsocketHandler,
    ws_addr: str,
    wss_addr: str,
    ssl_context: ssl.SSLContext | None,
    status_server: Server,
) -> BaseException:
    """Run every server until the first one fails and return that failure."""
    errors: queue.Queue = queue.Queue()
    tasks = [asyncio.create_task(handler.serve(ws_addr))]
    if ssl_context is not None:
        tasks.append(asyncio.create_task(handler.serve(wss_addr, ssl_context)))
    status_server.start(errors)
    try:
        while True:
            done, _ = await asyncio.wait(tasks, timeout=_POLL_INTERVAL)
            for task in done:
                error = task.exception()
                return error if error is not None else RuntimeError("websocket server stopped")
            try:
                return errors.get_nowait()
            except queue.Empty:
                pass
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        status_server.stop()


def _serve(args: argparse.Namespace) -> BaseException:
    try:
        broker_url = urlsplit(args.mqtt_addr)
        _ = broker_url.port
    except ValueError as err:
        raise ValueError(f"parsing mqtt broker url: {err}") from err

    registry = build_registry(args.cs_password)
    status_server = Server("status", args.status_addr, status_app)
    handler = WebsocketHandler(
        registry,
        mqtt_broker_urls=[broker_url],
        mqtt_topic_prefix="cs",
        org_names=args.org_name,
    )

    ssl_context = None
    if args.wss_addr:
        ssl_context = load_tls_context(
            args.tls_server_cert, args.tls_server_key, args.tls_trust_cert
        )

    return asyncio.run(
        _run_servers(handler, args.ws_addr, args.wss_addr, ssl_context, status_server)
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Run the command line; returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")
    try:
        error = _serve(args)
    except ValueError as err:
        print(f"Error: {err}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0
    print(f"Error: {error}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())