"""HTTP server components used by the gateway: a threaded WSGI server and the status app."""

from __future__ import annotations

import logging
import platform
import queue
import socket
import ssl
import sys
import threading
import time
from collections.abc import Callable, Iterable
from http import HTTPStatus
from socketserver import ThreadingMixIn
from typing import Any
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer

log = logging.getLogger(__name__)

WSGIApp = Callable[[dict[str, Any], Callable[..., Any]], Iterable[bytes]]

_START_TIME = time.time()


class ServerClosed(Exception):
    """Reported on the error queue once a server has stopped serving."""


def _split_addr(addr: str) -> tuple[str, int, socket.AddressFamily]:
    """Split "host:port" into its parts; an IPv6 host is written in brackets."""
    host, sep, port_text = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address {addr!r}: missing port")
    family = socket.AF_INET
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
        family = socket.AF_INET6
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"address {addr!r}: invalid port {port_text!r}") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"address {addr!r}: port {port} out of range")
    return host, port, family


def _join_addr(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class _RequestHandler(WSGIRequestHandler):
    # bounds the time a client may take to send its request
    timeout = 2.0

    def setup(self) -> None:
        if isinstance(self.request, ssl.SSLSocket):
            self.request.settimeout(self.timeout)
            self.request.do_handshake()
        super().setup()

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        log.info("%s - %s", self.address_string(), format % args)


class _WSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True

    def handle_error(self, request: Any, client_address: Any) -> None:
        log.exception("error handling request from %s", client_address)


class _WSGIServer6(_WSGIServer):
    address_family = socket.AF_INET6


class Server:
    """A named HTTP server that serves a WSGI app on a background thread."""

    def __init__(
        self,
        name: str,
        addr: str,
        app: WSGIApp,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        self.name = name
        self.app = app
        self.ssl_context = ssl_context
        self._bind_addr = addr
        self._addr = ""
        self._httpd: _WSGIServer | None = None
        self._thread: threading.Thread | None = None

    def start(self, errors: queue.Queue) -> None:
        """Listen and serve in the background; failures are put on ``errors``."""
        try:
            host, port, family = _split_addr(self._bind_addr)
            server_class = _WSGIServer6 if family == socket.AF_INET6 else _WSGIServer
            httpd = server_class((host, port), _RequestHandler)
        except (OSError, ValueError) as err:
            errors.put(err)
            return

        if self.ssl_context is not None:
            httpd.socket = self.ssl_context.wrap_socket(
                httpd.socket, server_side=True, do_handshake_on_connect=False
            )
        httpd.set_app(self.app)

        bound_host, bound_port = httpd.socket.getsockname()[:2]
        self._addr = _join_addr(bound_host, bound_port)
        self._httpd = httpd
        log.info("%s listening on %s", self.name, self._addr)

        def serve() -> None:
            try:
                httpd.serve_forever()
            except Exception as err:  # reported to whoever waits on the queue
                errors.put(err)
            else:
                errors.put(ServerClosed(f"{self.name} server closed"))

        self._thread = threading.Thread(target=serve, name=f"server-{self.name}", daemon=True)
        self._thread.start()

    def addr(self) -> str:
        """The address the server is listening on, or "" before it starts."""
        return self._addr

    def stop(self) -> None:
        """Stop serving and release the listening socket."""
        if self._httpd is None:
            return
        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
        self._httpd = None


def _metrics_body() -> bytes:
    version = sys.version_info
    lines = [
        "# HELP process_start_time_seconds Start time of the process since unix epoch in seconds.",
        "# TYPE process_start_time_seconds gauge",
        f"process_start_time_seconds {_START_TIME:.2f}",
        "# HELP python_info Python platform information.",
        "# TYPE python_info gauge",
        f'python_info{{implementation="{platform.python_implementation()}",'
        f'major="{version.major}",minor="{version.minor}",patchlevel="{version.micro}"}} 1',
    ]
    return ("\n".join(lines) + "\n").encode()


def _respond(
    start_response: Callable[..., Any], status: HTTPStatus, content_type: str, body: bytes
) -> list[bytes]:
    start_response(
        f"{status.value} {status.phrase}",
        [("Content-Type", content_type), ("Content-Length", str(len(body)))],
    )
    return [body]


def status_app(environ: dict[str, Any], start_response: Callable[..., Any]) -> list[bytes]:
    """WSGI app serving ``/health`` and ``/metrics``."""
    path = environ.get("PATH_INFO", "")
    method = environ.get("REQUEST_METHOD", "GET")

    if path == "/health":
        if method != "GET":
            return _respond(start_response, HTTPStatus.METHOD_NOT_ALLOWED, "text/plain", b"")
        return _respond(start_response, HTTPStatus.OK, "application/json", b'{"status":"OK"}')

    if path == "/metrics":
        return _respond(
            start_response,
            HTTPStatus.OK,
            "text/plain; version=0.0.4; charset=utf-8",
            _metrics_body(),
        )

    return _respond(
        start_response, HTTPStatus.NOT_FOUND, "text/plain; charset=utf-8", b"404 page not found\n"
    )