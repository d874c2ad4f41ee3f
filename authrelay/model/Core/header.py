import socket
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


# =============================================================================
# Core Types & Configuration
# =============================================================================

DEFAULT_LOCAL_PORT = 8001
DEFAULT_AUTH_METHOD = "NTLM"
DEFAULT_LISTEN_HOSTS = ("127.0.0.1", "localhost")
DEFAULT_UPSTREAM_TIMEOUT = 100.0


class CredentialMode(Enum):
    AMBIENT = "ambient"
    EXPLICIT = "explicit"


@dataclass(frozen=True)
class ProxyConfig:
    upstream_uri: str
    local_port: int = DEFAULT_LOCAL_PORT
    use_default_credentials: bool = False
    domain: str = ""
    username: str = ""
    authentication_method: str = DEFAULT_AUTH_METHOD
    ignored_request_headers: Tuple[str, ...] = ()
    listen_hosts: Tuple[str, ...] = DEFAULT_LISTEN_HOSTS
    upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT
    verify_tls: bool = True
    secret_source: str = "prompt"
    concurrent_requests: bool = False
    max_workers: int = 8

    @property
    def credential_mode(self) -> CredentialMode:
        if self.use_default_credentials:
            return CredentialMode.AMBIENT
        return CredentialMode.EXPLICIT


@dataclass(frozen=True)
class CredentialBinding:
    """
    Authentication material bound to exactly one upstream authority.

    Either ambient (the process identity is used) or explicit. Never
    mutated after creation, so one instance serves every request.
    """
    mode: CredentialMode
    authority: str
    scheme: str = DEFAULT_AUTH_METHOD
    domain: str = ""
    username: str = ""
    secret: str = field(default="", repr=False)

    @property
    def is_ambient(self) -> bool:
        return self.mode is CredentialMode.AMBIENT


@dataclass
class RequestContext:
    sequence: int
    client_addr: Tuple[str, int]
    start_time: datetime = field(default_factory=datetime.now)

    @property
    def label(self) -> str:
        return f"#{self.sequence}"


@dataclass
class InboundRequest:
    method: str
    raw_url: Optional[str]
    version: str
    headers: List[Tuple[str, str]]
    rfile: Optional[object] = field(default=None, repr=False)
    body: Optional[bytes] = None

    def get_all(self, name: str) -> List[str]:
        name = name.lower()
        return [value for key, value in self.headers if key.lower() == name]

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        values = self.get_all(name)
        return values[0] if values else default

    @property
    def content_type(self) -> Optional[str]:
        return self.get("Content-Type")

    @property
    def is_chunked(self) -> bool:
        encodings = ",".join(self.get_all("Transfer-Encoding")).lower()
        return "chunked" in [part.strip() for part in encodings.split(",")]

    @property
    def has_entity_body(self) -> bool:
        if self.is_chunked:
            return True
        length = self.get("Content-Length")
        if length is None:
            return False
        try:
            return int(length) > 0
        except ValueError:
            return False


@dataclass
class OutboundRequest:
    url: str
    method: str
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: Optional[bytes] = None
    content_type: Optional[str] = None

    def header_dict(self) -> Dict[str, str]:
        """Collapse repeated names into one comma-joined value, in order."""
        merged: Dict[str, str] = {}
        for name, value in self.headers:
            existing = next((key for key in merged if key.lower() == name.lower()), None)
            if existing is None:
                merged[name] = value
            else:
                separator = "; " if name.lower() == "cookie" else ", "
                merged[existing] = f"{merged[existing]}{separator}{value}"
        return merged


@dataclass(frozen=True)
class UpstreamResponse:
    status: int
    reason: str
    headers: Dict[str, str]
    body: bytes
    elapsed: float = 0.0


@dataclass
class ConnectionContext:
    client_socket: socket.socket
    request_context: RequestContext
    request: Optional[InboundRequest] = None
