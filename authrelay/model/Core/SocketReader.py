import select
import socket
import threading
from typing import Optional

from .errors import InvalidRequestError, RequestCancelled

BUFFER_SIZE = 65536
MAX_LINE = 65536


class SocketReader:
    """
    Buffered reader over a client socket that notices shutdown.

    Every recv is preceded by a short select() so a set cancel token is
    observed within one poll interval, and a client that goes quiet for
    longer than idle_timeout is dropped.
    """

    def __init__(self, sock: socket.socket, cancel_token: Optional[threading.Event] = None,
                 poll_interval: float = 0.5, idle_timeout: float = 30.0):
        self.sock = sock
        self.cancel_token = cancel_token or threading.Event()
        self.poll_interval = poll_interval
        self.idle_timeout = idle_timeout
        self._buffer = b""
        self.eof = False

    def _fill(self) -> bool:
        """Receive more bytes into the buffer. False once the peer has closed."""
        if self.eof:
            return False
        waited = 0.0
        while True:
            if self.cancel_token.is_set():
                raise RequestCancelled("Shutdown while reading the client request")
            readable, _, _ = select.select([self.sock], [], [], self.poll_interval)
            if readable:
                break
            waited += self.poll_interval
            if waited >= self.idle_timeout:
                raise InvalidRequestError(f"Client idle for {self.idle_timeout:.0f}s")
        data = self.sock.recv(BUFFER_SIZE)
        if not data:
            self.eof = True
            return False
        self._buffer += data
        return True

    def readline(self) -> bytes:
        while b"\n" not in self._buffer:
            if len(self._buffer) > MAX_LINE:
                raise InvalidRequestError("Header line too long")
            if not self._fill():
                line, self._buffer = self._buffer, b""
                return line
        index = self._buffer.index(b"\n") + 1
        line, self._buffer = self._buffer[:index], self._buffer[index:]
        return line

    def read(self, size: int) -> bytes:
        """Read up to size bytes; fewer only if the peer closes first."""
        while len(self._buffer) < size:
            if not self._fill():
                break
        data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data

    def read_chunked(self) -> bytes:
        chunks = []
        while True:
            line = self.readline()
            if not line:
                break
            size_text = line.split(b";", 1)[0].strip()
            try:
                size = int(size_text, 16)
            except ValueError:
                raise InvalidRequestError(f"Bad chunk size {size_text!r}") from None
            if size == 0:
                # Trailer section ends with an empty line
                while True:
                    trailer = self.readline()
                    if trailer in (b"\r\n", b"\n", b""):
                        break
                break
            chunk = self.read(size)
            chunks.append(chunk)
            if len(chunk) < size:
                break
            self.readline()
        return b"".join(chunks)
