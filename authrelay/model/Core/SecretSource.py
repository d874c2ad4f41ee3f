"""
Secret sources for the explicit credential binding.

The relay never reads a password itself; it asks one of these sources.
Sources return None when they have nothing to offer, and the credential
resolver decides whether that is fatal.
"""

import logging
import os
from typing import Optional

import keyring
from keyring.errors import KeyringError
from rich.prompt import Prompt

from .errors import ConfigurationError

logger = logging.getLogger("authrelay.secrets")

KEYRING_SERVICE = "AuthRelay"
PASSWORD_ENV = "AUTHRELAY_PASSWORD"


def keyring_key(username: str, domain: str = "") -> str:
    """Keyring user name, DOMAIN\\user when a domain is configured."""
    if domain:
        return f"{domain}\\{username}"
    return username


class SecretSource:
    name = "base"

    def get_secret(self, username: str, domain: str = "") -> Optional[str]:
        raise NotImplementedError


class TerminalSecretSource(SecretSource):
    """Masked prompt on the controlling terminal."""

    name = "prompt"

    def __init__(self, prompt: str = "Provide password"):
        self.prompt = prompt

    def get_secret(self, username: str, domain: str = "") -> Optional[str]:
        label = keyring_key(username, domain) if username else ""
        text = f"{self.prompt} for {label}" if label else self.prompt
        return Prompt.ask(text, password=True) or None


class EnvironmentSecretSource(SecretSource):
    name = "env"

    def __init__(self, variable: str = PASSWORD_ENV):
        self.variable = variable

    def get_secret(self, username: str, domain: str = "") -> Optional[str]:
        value = os.environ.get(self.variable)
        if not value:
            logger.debug(f"Environment variable {self.variable} is not set")
        return value or None


class KeyringSecretSource(SecretSource):
    """Looks the password up in the OS keyring under service AuthRelay."""

    name = "keyring"

    def __init__(self, service: str = KEYRING_SERVICE):
        self.service = service

    def get_secret(self, username: str, domain: str = "") -> Optional[str]:
        key = keyring_key(username, domain)
        try:
            return keyring.get_password(self.service, key)
        except KeyringError as e:
            raise ConfigurationError(f"Keyring lookup for '{key}' failed: {e}") from e

    def store_secret(self, username: str, secret: str, domain: str = ""):
        key = keyring_key(username, domain)
        keyring.set_password(self.service, key, secret)
        logger.info(f"Password stored in keyring service {self.service} for {key}")


SOURCES = {
    TerminalSecretSource.name: TerminalSecretSource,
    EnvironmentSecretSource.name: EnvironmentSecretSource,
    KeyringSecretSource.name: KeyringSecretSource,
}


def get_secret_source(name: str) -> SecretSource:
    try:
        return SOURCES[name.lower()]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown secret source '{name}', expected one of {', '.join(sorted(SOURCES))}"
        ) from None
