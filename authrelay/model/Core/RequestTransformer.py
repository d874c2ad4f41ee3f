import logging
import re
from typing import Optional
from urllib.parse import urlsplit

from .errors import InvalidRequestError
from .header import InboundRequest, OutboundRequest
from .HeaderFilter import HeaderFilter

logger = logging.getLogger("authrelay.transform")

_TOKEN = r"[!#$%&'*+.^_`|~0-9A-Za-z-]+"
MEDIA_TYPE_RE = re.compile(rf"^\s*{_TOKEN}/{_TOKEN}\s*(;.*)?$")


def is_valid_media_type(value: Optional[str]) -> bool:
    return bool(value) and MEDIA_TYPE_RE.match(value) is not None


def origin_form(raw_url: Optional[str]) -> str:
    """
    Path and query of the request target, taken verbatim.

    Clients that treat the relay as an explicit proxy send absolute-form
    targets; only their path and query are kept.
    """
    if not raw_url:
        raise InvalidRequestError("Request has no path")
    if raw_url.startswith("/"):
        return raw_url
    if raw_url.lower().startswith(("http://", "https://")):
        parts = urlsplit(raw_url)
        path = parts.path or "/"
        return f"{path}?{parts.query}" if parts.query else path
    raise InvalidRequestError(f"Unsupported request target {raw_url!r}")


class RequestTransformer:
    """Builds the upstream request for an accepted local request."""

    def __init__(self, upstream_base: str, header_filter: HeaderFilter):
        self.upstream_base = upstream_base
        self.header_filter = header_filter

    def read_body(self, inbound: InboundRequest) -> Optional[bytes]:
        """Buffer the whole declared body. No size cap."""
        if inbound.body is not None or not inbound.has_entity_body:
            return inbound.body
        if inbound.rfile is None:
            return None

        if inbound.is_chunked:
            inbound.body = inbound.rfile.read_chunked()
        else:
            inbound.body = inbound.rfile.read(int(inbound.get("Content-Length")))
        return inbound.body

    def build(self, inbound: InboundRequest) -> OutboundRequest:
        target = origin_form(inbound.raw_url)

        outbound = OutboundRequest(
            url=f"{self.upstream_base}{target}",
            method=inbound.method.upper(),
        )

        body = self.read_body(inbound)
        if body is not None:
            outbound.body = body
            content_type = inbound.content_type
            if content_type:
                if is_valid_media_type(content_type):
                    outbound.content_type = content_type.strip()
                else:
                    logger.warning(f"Dropping invalid Content-Type {content_type!r}")
            outbound.headers.append(("Content-Length", str(len(body))))
            if outbound.content_type:
                outbound.headers.append(("Content-Type", outbound.content_type))

        for name, value in inbound.headers:
            if self.header_filter.should_forward(name):
                outbound.headers.append((name, value))

        return outbound
