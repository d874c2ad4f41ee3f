import socket
import threading
import time

import pytest

from authrelay.model.Core.errors import ClientTimeoutError, RequestCancelled
from authrelay.model.Core.header import UpstreamResponse
from authrelay.model.Core.ResponseRelay import ResponseRelay, status_line


def test_status_line_reason_fallback():
    assert status_line(404) == "HTTP/1.1 404 Not Found"
    assert status_line(299) == "HTTP/1.1 299"
    assert status_line(200, "Fine") == "HTTP/1.1 200 Fine"


def test_render_sets_actual_length():
    response = UpstreamResponse(status=201, reason="Created",
                                headers={"Content-Type": "text/plain", "Content-Length": "999"},
                                body=b"done")
    payload = ResponseRelay().render(response)
    head, body = payload.split(b"\r\n\r\n", 1)
    lines = head.decode().split("\r\n")
    assert lines[0] == "HTTP/1.1 201 Created"
    assert "Content-Type: text/plain" in lines
    assert "Content-Length: 4" in lines
    assert "Content-Length: 999" not in lines
    assert body == b"done"


def test_relay_writes_to_connection():
    left, right = socket.socketpair()
    try:
        response = UpstreamResponse(status=500, reason="", headers={}, body=b"")
        written = ResponseRelay().relay(response, left)
        left.close()
        received = b""
        while True:
            data = right.recv(4096)
            if not data:
                break
            received += data
    finally:
        right.close()
    assert written == len(received)
    assert received.startswith(b"HTTP/1.1 500 Internal Server Error\r\n")
    assert b"Content-Length: 0\r\n" in received


def stalled_pair():
    """A connected pair whose reading side never reads."""
    left, right = socket.socketpair()
    left.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, 4096)
    right.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 4096)
    return left, right


def test_write_aborts_on_shutdown():
    left, right = stalled_pair()
    token = threading.Event()
    relay = ResponseRelay(token, poll_interval=0.05)
    threading.Timer(0.2, token.set).start()
    start = time.perf_counter()
    try:
        with pytest.raises(RequestCancelled):
            relay.write(left, b"x" * (8 * 1024 * 1024))
    finally:
        left.close()
        right.close()
    assert time.perf_counter() - start < 2


def test_write_gives_up_on_client_that_stops_reading():
    left, right = stalled_pair()
    relay = ResponseRelay(poll_interval=0.05, idle_timeout=0.3)
    try:
        with pytest.raises(ClientTimeoutError):
            relay.write(left, b"x" * (8 * 1024 * 1024))
    finally:
        left.close()
        right.close()
