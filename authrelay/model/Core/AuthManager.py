"""
Credential resolution and the requests auth handlers that use it.

The resolver turns configuration into a CredentialBinding once at
startup. build_auth() then wraps that binding in a requests auth object
which answers 401 challenges from the bound authority on its own, so the
forwarding code never performs a handshake by hand.
"""

import base64
import logging
import re
from typing import Callable, Optional
from urllib.parse import urlsplit

from ntlm_auth.ntlm import NtlmContext
from requests.auth import AuthBase, HTTPBasicAuth

from .errors import ConfigurationError
from .header import CredentialBinding, CredentialMode, ProxyConfig
from .SecretSource import SecretSource

logger = logging.getLogger("authrelay.auth")

SCHEMES = {
    "ntlm": "NTLM",
    "negotiate": "Negotiate",
    "kerberos": "Kerberos",
    "basic": "Basic",
}

SPNEGO_OID = "1.3.6.1.5.5.2"
KRB5_OID = "1.2.840.113554.1.2.2"

# RFC 5234 appendix B.1 CTL characters
_CONTROL_CHARACTERS = "".join(chr(i) for i in range(0x20)) + "\u007f"


def normalize_scheme(name: Optional[str]) -> str:
    if not name or not name.strip():
        return SCHEMES["ntlm"]
    try:
        return SCHEMES[name.strip().lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unsupported authentication method '{name}', expected one of "
            f"{', '.join(SCHEMES.values())}"
        ) from None


def merge_cookies(cookie_header: Optional[str], set_cookies) -> str:
    """Fold Set-Cookie name=value pairs into a Cookie header, replacing same names."""
    pairs = {}
    for part in (cookie_header or "").split(";"):
        name, sep, value = part.strip().partition("=")
        if sep:
            pairs[name] = value
    for set_cookie in set_cookies:
        name, sep, value = set_cookie.split(";", 1)[0].strip().partition("=")
        if sep and name:
            pairs[name] = value
    return "; ".join(f"{name}={value}" for name, value in pairs.items())


def _authority_of(uri: str):
    parts = urlsplit(uri)
    if not parts.scheme or not parts.hostname:
        return None
    port = parts.port or (443 if parts.scheme.lower() == "https" else 80)
    return parts.scheme.lower(), parts.hostname.lower(), port


class AuthManager:
    """
    Resolves the credential binding for the configured upstream.

    The secret source is only consulted for explicit credentials; ambient
    mode never asks for a password.
    """

    def __init__(self, config: ProxyConfig, secret_source: Optional[SecretSource] = None):
        self.config = config
        self.secret_source = secret_source

    def resolve(self, secret: Optional[str] = None) -> CredentialBinding:
        config = self.config

        if config.credential_mode is CredentialMode.AMBIENT:
            logger.debug("Use default credentials")
            return CredentialBinding(mode=CredentialMode.AMBIENT, authority=config.upstream_uri,
                                     scheme=SCHEMES["negotiate"])

        if not config.upstream_uri or _authority_of(config.upstream_uri) is None:
            raise ConfigurationError("UpstreamURI is required to bind explicit credentials")

        scheme = normalize_scheme(config.authentication_method)

        if secret is None and self.secret_source is not None:
            secret = self.secret_source.get_secret(config.username, config.domain)
        if not secret:
            raise ConfigurationError(
                f"No password available for user '{config.username}' "
                f"(secret source: {config.secret_source})"
            )

        logger.debug(
            f"Use new {scheme} credentials for domain '{config.domain}' user '{config.username}'"
        )
        return CredentialBinding(
            mode=CredentialMode.EXPLICIT,
            authority=config.upstream_uri,
            scheme=scheme,
            domain=config.domain,
            username=config.username,
            secret=secret,
        )


def build_auth(binding: CredentialBinding) -> AuthBase:
    """Create the requests auth handler for a binding."""
    if binding.is_ambient:
        return HandshakeAuth("Negotiate", binding.authority, _gssapi_factory(binding, SPNEGO_OID))

    if binding.scheme == "NTLM":
        def ntlm_context(host):
            return NtlmContext(binding.username, binding.secret, binding.domain, "",
                               ntlm_compatibility=3)
        return HandshakeAuth("NTLM", binding.authority, ntlm_context)

    if binding.scheme == "Negotiate":
        return HandshakeAuth("Negotiate", binding.authority, _gssapi_factory(binding, SPNEGO_OID))

    if binding.scheme == "Kerberos":
        return HandshakeAuth("Negotiate", binding.authority, _gssapi_factory(binding, KRB5_OID))

    if binding.scheme == "Basic":
        username = binding.username
        if binding.domain:
            username = f"{binding.domain}\\{username}"
        # Colons are forbidden in Basic credentials
        if ":" in username or ":" in binding.secret:
            raise ConfigurationError("Basic credentials contain an invalid colon character")
        if any(char in username or char in binding.secret for char in _CONTROL_CHARACTERS):
            raise ConfigurationError("Basic credentials contain control characters")
        return ScopedBasicAuth(binding.authority, username, binding.secret)

    raise ConfigurationError(f"Unsupported authentication method '{binding.scheme}'")


def _gssapi_factory(binding: CredentialBinding, mech_oid: str):
    try:
        import gssapi
    except ImportError as e:
        raise ConfigurationError(
            "Negotiate/Kerberos authentication requires the 'gssapi' package "
            "(install authrelay[kerberos])"
        ) from e

    mech = gssapi.OID.from_int_seq(mech_oid)
    creds = None
    if not binding.is_ambient:
        principal = binding.username
        if binding.domain:
            principal = f"{binding.username}@{binding.domain.upper()}"
        name = gssapi.Name(principal, gssapi.NameType.user)
        try:
            acquired = gssapi.raw.acquire_cred_with_password(
                name, binding.secret.encode("utf-8"), usage="initiate")
        except gssapi.exceptions.GSSError as e:
            raise ConfigurationError(f"Could not acquire Kerberos credentials for {principal}: {e}") from e
        creds = gssapi.Credentials(base=acquired.creds)

    def gssapi_context(host):
        service = gssapi.Name(f"HTTP@{host}", gssapi.NameType.hostbased_service)
        return _GssapiContext(gssapi.SecurityContext(name=service, usage="initiate",
                                                     mech=mech, creds=creds))

    return gssapi_context


class _GssapiContext:
    """Adapts a gssapi security context to the step() shape of NtlmContext."""

    def __init__(self, context):
        self._context = context

    def step(self, input_token: Optional[bytes] = None) -> bytes:
        return self._context.step(input_token) or b""


class _ScopedAuth(AuthBase):
    """Only authenticates requests aimed at the bound authority."""

    def __init__(self, authority: str):
        self.authority = _authority_of(authority)

    def targets(self, url: str) -> bool:
        return self.authority is not None and _authority_of(url) == self.authority


class ScopedBasicAuth(_ScopedAuth):
    def __init__(self, authority: str, username: str, password: str):
        super().__init__(authority)
        self._basic = HTTPBasicAuth(username, password)

    def __call__(self, r):
        if self.targets(r.url):
            return self._basic(r)
        return r


class HandshakeAuth(_ScopedAuth):
    """
    Connection-oriented challenge/response auth (NTLM, Negotiate).

    On a 401 that offers our scheme, the request is replayed on the same
    pooled connection with the negotiate token, then again with the
    answer to the server's challenge. A fresh security context is built
    for every handshake so the handler itself holds no per-request state.
    """

    def __init__(self, scheme: str, authority: str, context_factory: Callable):
        super().__init__(authority)
        self.scheme = scheme
        self.context_factory = context_factory
        self._challenge_re = re.compile(rf"{re.escape(scheme)}\s+([A-Za-z0-9+/=]+)", re.IGNORECASE)

    def __call__(self, r):
        if self.targets(r.url):
            r.headers["Connection"] = "Keep-Alive"
            r.register_hook("response", self.response_hook)
        return r

    def offered(self, response) -> bool:
        offers = response.headers.get("www-authenticate", "")
        return self.scheme.lower() in offers.lower()

    def response_hook(self, response, **kwargs):
        if response.status_code != 401 or not self.offered(response):
            return response
        return self.handshake(response, **kwargs)

    def _challenge(self, response) -> Optional[bytes]:
        match = self._challenge_re.search(response.headers.get("www-authenticate", ""))
        if not match:
            return None
        return base64.b64decode(match.group(1))

    def _replay(self, response, token: bytes, **kwargs):
        # Drain so the connection goes back to the pool for the next leg
        response.content
        response.raw.release_conn()

        request = response.request.copy()
        request.headers["Authorization"] = f"{self.scheme} {base64.b64encode(token).decode('ascii')}"
        set_cookies = response.raw.headers.getlist("Set-Cookie") if response.raw is not None else []
        if set_cookies:
            request.headers["Cookie"] = merge_cookies(request.headers.get("Cookie"), set_cookies)

        replayed = response.connection.send(request, **kwargs)
        replayed.history.append(response)
        return replayed

    def handshake(self, response, **kwargs):
        host = urlsplit(response.request.url).hostname
        context = self.context_factory(host)

        logger.debug(f"{self.scheme} challenge from {host}, starting handshake")
        challenged = self._replay(response, context.step(None), **kwargs)

        if challenged.status_code != 401:
            return challenged

        challenge = self._challenge(challenged)
        if challenge is None:
            logger.warning(f"{self.scheme} handshake with {host} got no challenge, auth didn't work")
            return challenged

        final = self._replay(challenged, context.step(challenge), **kwargs)
        history = challenged.history + [challenged]
        final.history = history
        if final.status_code == 401:
            logger.warning(f"{self.scheme} authentication to {host} was rejected")
        return final
