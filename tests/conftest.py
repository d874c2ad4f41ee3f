import base64
import gzip
import socket
import threading
import time

import pytest
import requests
from flask import Flask, Response, jsonify, request
from werkzeug.serving import make_server

from authrelay.model.AuthRelayProxyServer import AuthRelayProxyServer
from authrelay.model.Core.Diagnostics import ProxyStats
from authrelay.model.Core.ForwarderClient import ForwarderClient
from authrelay.model.Core.header import ProxyConfig
from authrelay.model.Core.HeaderFilter import DEFAULT_HOP_BY_HOP

METHODS = ['GET', 'POST', 'PUT', 'DELETE', 'PATCH', 'HEAD', 'OPTIONS']


def create_upstream_app():
    """Echo upstream: reports back what the relay sent it."""
    app = Flask(__name__)
    app.config["seen"] = []

    @app.route('/status/<int:code>', methods=METHODS)
    def status(code):
        return Response(f"status {code}", status=code, content_type="text/plain")

    @app.route('/slow', methods=METHODS)
    def slow():
        time.sleep(float(request.args.get("delay", "2")))
        return "slow"

    @app.route('/languages')
    def languages():
        return Response("bonjour", headers=[
            ("Content-Type", "text/plain; charset=utf-8"),
            ("Content-Language", "fr"),
            ("Content-Language", "en"),
            ("X-Upstream-Only", "1"),
            ("Set-Cookie", "session=abc"),
        ])

    @app.route('/gzip')
    def gzipped():
        return Response(gzip.compress(b"compressed payload"), headers={
            "Content-Type": "text/plain",
            "Content-Encoding": "gzip",
        })

    def ntlm_exchange(**extra):
        auth = request.headers.get("Authorization", "")
        if not auth:
            return Response("no auth", status=401, headers={"WWW-Authenticate": "NTLM"})
        token = base64.b64decode(auth.split()[1])
        if token == b"negotiate":
            challenge = base64.b64encode(b"challenge").decode()
            return Response("challenge", status=401, headers=[
                ("WWW-Authenticate", f"NTLM {challenge}"),
                ("Set-Cookie", "ntlmsession=xyz; Path=/; HttpOnly"),
            ])
        if token == b"authenticate:challenge":
            return jsonify(authenticated=True, body=request.get_data().decode("latin-1"), **extra)
        return Response("bad token", status=403)

    @app.route('/ntlm', methods=METHODS)
    def ntlm():
        return ntlm_exchange()

    @app.route('/ntlm-cookies', methods=METHODS)
    def ntlm_cookies():
        return ntlm_exchange(cookie=request.headers.get("Cookie"))

    @app.route('/large')
    def large():
        return Response(b"x" * int(request.args.get("size", "1024")),
                        content_type="application/octet-stream")

    @app.route('/basic')
    def basic():
        return jsonify(authorization=request.headers.get("Authorization"))

    @app.route('/', defaults={'path': ''}, methods=METHODS)
    @app.route('/<path:path>', methods=METHODS)
    def catch_all(path):
        body = request.get_data()
        app.config["seen"].append(request.environ.get("RAW_URI"))
        return jsonify(
            method=request.method,
            raw_uri=request.environ.get("RAW_URI"),
            headers=[[name, value] for name, value in request.headers.items()],
            body=body.decode("latin-1"),
            content_length=request.headers.get("Content-Length"),
        )

    return app


class ServerThread:
    def __init__(self, app):
        self.server = make_server("127.0.0.1", 0, app, threaded=True)
        self.port = self.server.server_port
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)

    @property
    def url(self):
        return f"http://127.0.0.1:{self.port}"

    def start(self):
        self.thread.start()
        return self

    def stop(self):
        self.server.shutdown()
        self.thread.join(timeout=5)


class RunningRelay:
    def __init__(self, server):
        self.server = server
        self.thread = threading.Thread(target=server.serve_forever, daemon=True)

    @property
    def url(self):
        return f"http://127.0.0.1:{self.server.port}"

    def start(self):
        self.server.bind()
        self.thread.start()
        assert self.server.ready.wait(5)
        return self

    def stop(self):
        self.server.stop()
        self.thread.join(timeout=5)


@pytest.fixture
def upstream_app():
    return create_upstream_app()


@pytest.fixture
def upstream(upstream_app):
    server = ServerThread(upstream_app).start()
    yield server
    server.stop()


@pytest.fixture
def make_config(upstream):
    def factory(**overrides):
        values = dict(
            upstream_uri=upstream.url,
            local_port=0,
            listen_hosts=("127.0.0.1",),
            ignored_request_headers=DEFAULT_HOP_BY_HOP + ("X-Debug",),
        )
        values.update(overrides)
        return ProxyConfig(**values)
    return factory


@pytest.fixture
def start_relay():
    running = []

    def factory(config, auth=None, timeout=5.0):
        forwarder = ForwarderClient(auth=auth, timeout=timeout, poll_interval=0.05)
        stats = ProxyStats()
        server = AuthRelayProxyServer(config, forwarder, hooks=stats, poll_interval=0.05,
                                      client_timeout=2.0)
        relay = RunningRelay(server).start()
        running.append((relay, forwarder))
        return relay

    yield factory

    for relay, forwarder in running:
        relay.stop()
        forwarder.close()


@pytest.fixture
def relay(make_config, start_relay):
    return start_relay(make_config())


@pytest.fixture
def client():
    session = requests.Session()
    session.trust_env = False
    yield session
    session.close()


@pytest.fixture
def closed_port():
    """A port nothing listens on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
