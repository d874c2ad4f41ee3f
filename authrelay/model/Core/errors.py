class ProxyError(Exception):
    """Base class for every failure raised by the relay."""


class ConfigurationError(ProxyError):
    """Missing or invalid configuration, detected at startup."""


class ListenerError(ProxyError):
    """The local listener could not be bound."""


class InvalidRequestError(ProxyError):
    """The inbound request is malformed and cannot be forwarded."""


class ClientTimeoutError(ProxyError):
    """The local client stopped reading the response."""


class UpstreamUnavailableError(ProxyError):
    """Connection refused, DNS failure or TLS failure talking to upstream."""


class UpstreamTimeoutError(ProxyError):
    """No upstream response arrived before the timeout or a shutdown."""


class RequestCancelled(ProxyError):
    """Shutdown was requested while a request was still being read or written."""
