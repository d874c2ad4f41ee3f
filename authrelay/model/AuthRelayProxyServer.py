"""
AuthRelay Proxy Server
Description: Local forwarding proxy. Accepts plain HTTP on loopback and
             replays every request against one upstream authority with
             domain credentials attached (NTLM, Negotiate or Basic).
"""

import errno
import ipaddress
import logging
import select
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

from .Core.Diagnostics import DiagnosticHooks
from .Core.errors import (InvalidRequestError, ListenerError, ProxyError, RequestCancelled,
                          UpstreamTimeoutError)
from .Core.ForwarderClient import ForwarderClient
from .Core.header import ConnectionContext, InboundRequest, ProxyConfig, RequestContext
from .Core.HeaderFilter import HeaderFilter
from .Core.RequestTransformer import RequestTransformer
from .Core.ResponseRelay import ResponseRelay
from .Core.SocketReader import SocketReader

logger = logging.getLogger("authrelay")

MAX_HEADERS = 200


class AuthRelayProxyServer:
    """
    Accept loop of the relay.

    Each accepted connection carries exactly one request and goes through
    transform, forward and relay before the connection is closed. By
    default one request is in flight at a time, so responses are written
    strictly in acceptance order. With concurrent_requests enabled each
    connection is handed to a worker pool instead, and that ordering no
    longer holds.

    Attributes:
        config (ProxyConfig): Immutable process configuration
        forwarder (ForwarderClient): Authenticated upstream client, shared
        cancel_token (threading.Event): Set to shut the loop down
        server_sockets (list): Bound listening sockets
    """

    def __init__(self, config: ProxyConfig, forwarder: ForwarderClient,
                 header_filter: Optional[HeaderFilter] = None,
                 hooks: Optional[DiagnosticHooks] = None,
                 cancel_token: Optional[threading.Event] = None,
                 poll_interval: float = 0.5, client_timeout: float = 30.0):
        self.config = config
        self.forwarder = forwarder
        self.header_filter = header_filter or HeaderFilter(config.ignored_request_headers)
        self.transformer = RequestTransformer(config.upstream_uri, self.header_filter)
        self.hooks = hooks or DiagnosticHooks()
        self.cancel_token = cancel_token or threading.Event()
        self.poll_interval = poll_interval
        self.client_timeout = client_timeout
        self.relay = ResponseRelay(self.cancel_token, poll_interval, client_timeout)

        self.server_sockets: List[socket.socket] = []
        self.port = config.local_port
        self.sequence = 0
        self.executor: Optional[ThreadPoolExecutor] = None
        self.ready = threading.Event()

    # -------------------------------------------------------------------------
    # Listener
    # -------------------------------------------------------------------------

    def _listen_addresses(self) -> List[Tuple[int, tuple]]:
        addresses = []
        seen = set()
        for host in self.config.listen_hosts:
            try:
                infos = socket.getaddrinfo(host, self.port, type=socket.SOCK_STREAM)
            except socket.gaierror as e:
                logger.warning(f"Cannot resolve listen host {host}: {e}")
                continue
            for family, _, _, _, sockaddr in infos:
                if family not in (socket.AF_INET, socket.AF_INET6):
                    continue
                if not ipaddress.ip_address(sockaddr[0].split("%")[0]).is_loopback:
                    logger.warning(f"Skipping non-loopback address {sockaddr[0]} for {host}")
                    continue
                if sockaddr[0] in seen:
                    continue
                seen.add(sockaddr[0])
                addresses.append((family, sockaddr))
        return addresses

    def _create_server_socket(self, family: int, sockaddr: tuple) -> socket.socket:
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if family == socket.AF_INET6:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
            sock.bind((sockaddr[0], self.port) + tuple(sockaddr[2:]))
            sock.listen(128)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        return sock

    def bind(self):
        """Bind every loopback address. Any failure is fatal."""
        addresses = self._listen_addresses()
        if not addresses:
            raise ListenerError(f"No loopback address to listen on for {self.config.listen_hosts}")

        for family, sockaddr in addresses:
            try:
                sock = self._create_server_socket(family, sockaddr)
            except OSError as e:
                if e.errno in (errno.EADDRNOTAVAIL, errno.EAFNOSUPPORT) and family == socket.AF_INET6:
                    # IPv6 loopback disabled on this host
                    logger.warning(f"Skipping {sockaddr[0]}: {e}")
                    continue
                self.cleanup()
                raise ListenerError(f"Failed to bind {sockaddr[0]}:{self.port}: {e}") from e
            self.server_sockets.append(sock)
            # Port 0 picks a free port once; the other addresses reuse it
            if self.port == 0:
                self.port = sock.getsockname()[1]
            logger.info(f"📍 Listening on {sockaddr[0]}:{self.port}")

    # -------------------------------------------------------------------------
    # Accept loop
    # -------------------------------------------------------------------------

    def start(self):
        """Bind and serve until stop() is called."""
        logger.info(f"🚀 Starting AuthRelay -> {self.config.upstream_uri}")
        self.bind()
        self.serve_forever()

    def serve_forever(self):
        if self.config.concurrent_requests:
            self.executor = ThreadPoolExecutor(max_workers=self.config.max_workers,
                                               thread_name_prefix="authrelay-worker")
            logger.info(f"Concurrent mode, {self.config.max_workers} workers")

        self.ready.set()
        try:
            while not self.cancel_token.is_set():
                readable, _, _ = select.select(self.server_sockets, [], [], self.poll_interval)
                for sock in readable:
                    if self.cancel_token.is_set():
                        break
                    try:
                        client_socket, client_addr = sock.accept()
                    except BlockingIOError:
                        continue
                    self._dispatch(client_socket, client_addr)
        finally:
            if self.executor is not None:
                self.executor.shutdown(wait=True)
            self.cleanup()
            logger.info("✅ Proxy stopped")

    def _dispatch(self, client_socket: socket.socket, client_addr):
        self.sequence += 1
        context = ConnectionContext(
            client_socket=client_socket,
            request_context=RequestContext(sequence=self.sequence, client_addr=client_addr[:2]),
        )
        client_socket.setblocking(True)

        if self.executor is not None:
            self.executor.submit(self.handle_connection, context)
        else:
            self.handle_connection(context)

    def handle_connection(self, context: ConnectionContext):
        """One request, start to finish. Never raises."""
        ctx = context.request_context
        self.hooks.on_accepted(ctx)
        try:
            self.process(context)
        except (RequestCancelled, UpstreamTimeoutError) as e:
            if self.cancel_token.is_set():
                logger.info("Full stop")
                logger.debug(f"Request {ctx.label} cancelled: {e}")
            else:
                logger.error(f"Request {ctx.label} failed: {e}")
                self.hooks.on_error(ctx, e)
        except ProxyError as e:
            logger.error(f"Request {ctx.label} failed: {e}")
            self.hooks.on_error(ctx, e)
        except OSError as e:
            logger.error(f"Request {ctx.label} connection error: {e}")
            self.hooks.on_error(ctx, e)
        except Exception as e:
            logger.exception(f"We have a problem :( Last request {ctx.label}")
            self.hooks.on_error(ctx, e)
        finally:
            try:
                context.client_socket.close()
            except OSError:
                pass

    def process(self, context: ConnectionContext):
        ctx = context.request_context
        reader = SocketReader(context.client_socket, self.cancel_token,
                              idle_timeout=self.client_timeout)

        # Accepted
        inbound = self._parse_http_request(reader)
        if inbound is None:
            logger.debug(f"Request {ctx.label} closed before sending anything")
            return
        context.request = inbound
        logger.debug(f"Received request {ctx.label} {inbound.method} {inbound.raw_url} "
                     f"from {ctx.client_addr[0]}")

        if not inbound.raw_url:
            logger.warning(f"Request {ctx.label} is null")
            return

        if inbound.has_entity_body and "100-continue" in (inbound.get("Expect") or "").lower():
            self.relay.write(context.client_socket, b"HTTP/1.1 100 Continue\r\n\r\n")

        # Transformed
        outbound = self.transformer.build(inbound)
        logger.info(f"Send request {ctx.label} to {outbound.url} method {outbound.method}")
        logger.debug(f"Remote request {ctx.label} headers: "
                     f"{[f'{name}:[{value}]' for name, value in outbound.headers]}")

        # Forwarded
        response = self.forwarder.send(outbound, self.cancel_token)
        logger.debug(
            f"A response to the request {ctx.label} was received. Status is {response.status}. "
            f"Content-Length: {len(response.body)}. Time taken ms: {response.elapsed * 1000:.0f}"
        )

        # Relayed
        written = self.relay.relay(response, context.client_socket)
        logger.debug(f"Response to request {ctx.label} headers: {response.headers}")
        self.hooks.on_relayed(ctx, response, written)

    def _parse_http_request(self, reader: SocketReader) -> Optional[InboundRequest]:
        """Read the request line and header block. Body stays on the reader."""
        request_line = reader.readline()
        while request_line in (b"\r\n", b"\n"):
            request_line = reader.readline()
        if not request_line:
            return None

        parts = request_line.decode("latin-1").strip().split()
        if not parts:
            return None
        if len(parts) > 3:
            raise InvalidRequestError(f"Malformed request line {request_line!r}")
        method = parts[0]
        raw_url = parts[1] if len(parts) > 1 else None
        version = parts[2] if len(parts) > 2 else "HTTP/1.0"

        headers = []
        while True:
            line = reader.readline()
            if line in (b"\r\n", b"\n", b""):
                break
            text = line.decode("latin-1").rstrip("\r\n")
            if text[:1] in (" ", "\t") and headers:
                # obsolete line folding
                name, value = headers[-1]
                headers[-1] = (name, f"{value} {text.strip()}")
                continue
            if ":" not in text:
                raise InvalidRequestError(f"Malformed header line {text!r}")
            name, value = text.split(":", 1)
            headers.append((name.strip(), value.strip()))
            if len(headers) > MAX_HEADERS:
                raise InvalidRequestError("Too many headers")

        return InboundRequest(method=method, raw_url=raw_url, version=version,
                              headers=headers, rfile=reader)

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def signal_handler(self, sig, frame):
        logger.info("🛑 Stopping proxy...")
        self.stop()

    def stop(self):
        self.cancel_token.set()

    def cleanup(self):
        for sock in self.server_sockets:
            try:
                sock.close()
            except OSError:
                pass
        self.server_sockets = []
