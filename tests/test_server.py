import queue
import urllib.error
import urllib.request
from http import HTTPStatus
from wsgiref.util import setup_testing_defaults

import pytest

from maeve_gateway.server import Server, ServerClosed, status_app


class _StartResponse:
    def __init__(self):
        self.status = None
        self.headers = None

    def __call__(self, status, headers):
        self.status = status
        self.headers = headers


def _environ(path, method="GET"):
    environ = {}
    setup_testing_defaults(environ)
    environ["PATH_INFO"] = path
    environ["REQUEST_METHOD"] = method
    return environ


def _empty_app(environ, start_response):
    start_response("200 OK", [("Content-Length", "0")])
    return []


def test_server_serves_requests():
    server = Server("status server", "127.0.0.1:0", _empty_app)
    errors = queue.Queue()
    server.start(errors)
    try:
        assert errors.empty()
        assert server.addr() != ""
        assert server.addr().startswith("127.0.0.1:")
        with urllib.request.urlopen(f"http://{server.addr()}", timeout=2) as resp:
            assert resp.status == HTTPStatus.OK
    finally:
        server.stop()


def test_server_reports_closed_after_stop():
    server = Server("status", "127.0.0.1:0", _empty_app)
    errors = queue.Queue()
    server.start(errors)
    server.stop()
    err = errors.get(timeout=2)
    assert isinstance(err, ServerClosed)
    assert "status" in str(err)


def test_server_reports_bad_address():
    server = Server("status", "127.0.0.1:notaport", _empty_app)
    errors = queue.Queue()
    server.start(errors)
    err = errors.get_nowait()
    assert isinstance(err, ValueError)
    assert server.addr() == ""


def test_health_handler():
    start_response = _StartResponse()
    body = b"".join(status_app(_environ("/health"), start_response))
    assert start_response.status.startswith(str(HTTPStatus.OK.value))
    assert body == b'{"status":"OK"}'


def test_health_rejects_other_methods():
    start_response = _StartResponse()
    b"".join(status_app(_environ("/health", method="POST"), start_response))
    assert start_response.status.startswith(
        str(HTTPStatus.METHOD_NOT_ALLOWED.value)
    )


@pytest.mark.parametrize("path", ["/", "/nothing", "/health/extra"])
def test_unknown_path_is_not_found(path):
    start_response = _StartResponse()
    b"".join(status_app(_environ(path), start_response))
    assert start_response.status.startswith(str(HTTPStatus.NOT_FOUND.value))


def test_metrics_are_exposed():
    start_response = _StartResponse()
    body = b"".join(status_app(_environ("/metrics"), start_response))
    assert start_response.status.startswith(str(HTTPStatus.OK.value))
    assert b"process_start_time_seconds" in body


def test_status_app_over_http():
    server = Server("status", "127.0.0.1:0", status_app)
    errors = queue.Queue()
    server.start(errors)
    try:
        with urllib.request.urlopen(f"http://{server.addr()}/health", timeout=2) as resp:
            assert resp.status == HTTPStatus.OK
            assert resp.read() == b'{"status":"OK"}'
        with pytest.raises(urllib.error.HTTPError) as excinfo:
            urllib.request.urlopen(f"http://{server.addr()}/missing", timeout=2)
        assert excinfo.value.code == HTTPStatus.NOT_FOUND
    finally:
        server.stop()