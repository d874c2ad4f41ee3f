import logging
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from http.cookiejar import DefaultCookiePolicy
from typing import Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from requests.auth import AuthBase
from urllib3.exceptions import ProtocolError, ReadTimeoutError
from urllib3.util import SKIP_HEADER

from .errors import UpstreamTimeoutError, UpstreamUnavailableError
from .header import OutboundRequest, UpstreamResponse

logger = logging.getLogger("authrelay.forwarder")

# Headers describing the body; the only ones relayed back to the client.
CONTENT_HEADERS = (
    "allow",
    "content-disposition",
    "content-encoding",
    "content-language",
    "content-location",
    "content-md5",
    "content-range",
    "content-type",
    "expires",
    "last-modified",
)

# Added by requests or urllib3 unless told otherwise
SUPPRESSED_DEFAULTS = ("Accept-Encoding", "User-Agent")


def first_values(raw_headers) -> Dict[str, str]:
    """Content headers of an urllib3 response, first value of each name only."""
    headers = {}
    for name in raw_headers.keys():
        lowered = name.lower()
        if lowered not in CONTENT_HEADERS or any(k.lower() == lowered for k in headers):
            continue
        values = raw_headers.getlist(name) if hasattr(raw_headers, "getlist") else [raw_headers[name]]
        if values:
            headers[name] = values[0]
    return headers


class ForwarderClient:
    """
    Authenticated upstream client, built once and reused for every request.

    Each call runs on a daemon thread while the caller waits on a future,
    polling the cancel token so shutdown never waits on a slow upstream.
    """

    def __init__(self, auth: Optional[AuthBase] = None, timeout: float = 100.0,
                 verify: bool = True, pool_size: int = 10, poll_interval: float = 0.25):
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.session = requests.Session()
        self.session.auth = auth
        # Outbound headers are exactly what the transformer built
        self.session.headers.clear()
        # Cookies belong to the local clients, never to the shared session
        self.session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
        self.session.verify = verify
        # Never pick up HTTP(S)_PROXY for the upstream leg
        self.session.trust_env = False
        adapter = HTTPAdapter(pool_connections=1, pool_maxsize=pool_size)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _headers(self, outbound: OutboundRequest) -> Dict[str, str]:
        headers = outbound.header_dict()
        present = {name.lower() for name in headers}
        for name in SUPPRESSED_DEFAULTS:
            if name.lower() not in present:
                headers[name] = SKIP_HEADER
        return headers

    def _call(self, outbound: OutboundRequest) -> UpstreamResponse:
        start = time.perf_counter()
        try:
            response = self.session.request(
                outbound.method,
                outbound.url,
                headers=self._headers(outbound),
                data=outbound.body,
                timeout=self.timeout,
                allow_redirects=False,
                stream=True,
            )
        except requests.Timeout as e:
            raise UpstreamTimeoutError(f"Upstream {outbound.url} timed out: {e}") from e
        except requests.ConnectionError as e:
            raise UpstreamUnavailableError(f"Upstream {outbound.url} unavailable: {e}") from e

        try:
            # Undecoded, so Content-Encoding stays truthful
            body = response.raw.read(decode_content=False)
        except ReadTimeoutError as e:
            raise UpstreamTimeoutError(f"Upstream {outbound.url} stalled: {e}") from e
        except (ProtocolError, OSError) as e:
            raise UpstreamUnavailableError(f"Upstream {outbound.url} dropped: {e}") from e
        finally:
            response.close()

        elapsed = time.perf_counter() - start
        if response.history:
            logger.debug(f"{outbound.url} answered after {len(response.history)} auth round trip(s)")

        return UpstreamResponse(
            status=response.status_code,
            reason=response.reason or "",
            headers=first_values(response.raw.headers),
            body=body or b"",
            elapsed=elapsed,
        )

    def send(self, outbound: OutboundRequest,
             cancel_token: Optional[threading.Event] = None) -> UpstreamResponse:
        future: Future = Future()

        def worker():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self._call(outbound))
            except BaseException as e:
                future.set_exception(e)

        threading.Thread(target=worker, name="authrelay-upstream", daemon=True).start()

        while True:
            try:
                return future.result(timeout=self.poll_interval)
            except FutureTimeout:
                if cancel_token is not None and cancel_token.is_set():
                    raise UpstreamTimeoutError(
                        f"Cancelled before {outbound.url} responded") from None

    def close(self):
        self.session.close()
