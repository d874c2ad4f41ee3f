import select
import socket
import threading
from http import HTTPStatus
from typing import Optional

from .errors import ClientTimeoutError, RequestCancelled
from .header import UpstreamResponse

WRITE_SIZE = 65536


def status_line(status: int, reason: str = "") -> str:
    if not reason:
        try:
            reason = HTTPStatus(status).phrase
        except ValueError:
            reason = ""
    return f"HTTP/1.1 {status} {reason}".rstrip()


class ResponseRelay:
    """
    Writes an upstream response onto the local connection.

    Writes go out in slices, each after a select() on writability, so a
    client that stops reading cannot hold the loop past a shutdown or
    past idle_timeout.
    """

    def __init__(self, cancel_token: Optional[threading.Event] = None,
                 poll_interval: float = 0.5, idle_timeout: float = 30.0):
        self.cancel_token = cancel_token or threading.Event()
        self.poll_interval = poll_interval
        self.idle_timeout = idle_timeout

    def render(self, response: UpstreamResponse) -> bytes:
        lines = [status_line(response.status, response.reason)]
        for name, value in response.headers.items():
            if name.lower() == "content-length":
                continue
            lines.append(f"{name}: {value}")
        lines.append(f"Content-Length: {len(response.body)}")
        lines.append("Connection: close")
        head = "\r\n".join(lines) + "\r\n\r\n"
        return head.encode("latin-1", errors="replace") + response.body

    def write(self, connection: socket.socket, payload: bytes) -> int:
        view = memoryview(payload)
        offset = 0
        waited = 0.0
        connection.setblocking(False)
        try:
            while offset < len(view):
                if self.cancel_token.is_set():
                    raise RequestCancelled("Shutdown while writing the response")
                _, writable, _ = select.select([], [connection], [], self.poll_interval)
                if not writable:
                    waited += self.poll_interval
                    if waited >= self.idle_timeout:
                        raise ClientTimeoutError(
                            f"Client stopped reading for {self.idle_timeout:.0f}s")
                    continue
                try:
                    sent = connection.send(view[offset:offset + WRITE_SIZE])
                except BlockingIOError:
                    continue
                offset += sent
                waited = 0.0
        finally:
            connection.setblocking(True)
        return offset

    def relay(self, response: UpstreamResponse, connection: socket.socket) -> int:
        """Send status, content headers and body. Returns bytes written."""
        return self.write(connection, self.render(response))
