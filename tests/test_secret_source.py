import keyring
import pytest
from keyring.errors import KeyringError

from authrelay.model.Core import SecretSource as secret_module
from authrelay.model.Core.errors import ConfigurationError
from authrelay.model.Core.SecretSource import (EnvironmentSecretSource, KeyringSecretSource,
                                               TerminalSecretSource, get_secret_source,
                                               keyring_key)


def test_keyring_key():
    assert keyring_key("alice") == "alice"
    assert keyring_key("alice", "CORP") == "CORP\\alice"


def test_environment_source(monkeypatch):
    monkeypatch.setenv("AUTHRELAY_PASSWORD", "from-env")
    assert EnvironmentSecretSource().get_secret("alice") == "from-env"
    monkeypatch.delenv("AUTHRELAY_PASSWORD")
    assert EnvironmentSecretSource().get_secret("alice") is None


def test_keyring_source(monkeypatch):
    stored = {}
    monkeypatch.setattr(keyring, "get_password", lambda service, key: stored.get((service, key)))
    monkeypatch.setattr(keyring, "set_password",
                        lambda service, key, value: stored.__setitem__((service, key), value))

    source = KeyringSecretSource()
    assert source.get_secret("alice", "CORP") is None
    source.store_secret("alice", "pw", "CORP")
    assert stored == {("AuthRelay", "CORP\\alice"): "pw"}
    assert source.get_secret("alice", "CORP") == "pw"


def test_keyring_failure_is_configuration_error(monkeypatch):
    def broken(service, key):
        raise KeyringError("no backend")
    monkeypatch.setattr(keyring, "get_password", broken)
    with pytest.raises(ConfigurationError):
        KeyringSecretSource().get_secret("alice")


def test_terminal_source_masks_input(monkeypatch):
    asked = {}

    def fake_ask(prompt, password=False, **kwargs):
        asked["prompt"] = prompt
        asked["password"] = password
        return "typed"

    monkeypatch.setattr(secret_module.Prompt, "ask", fake_ask)
    assert TerminalSecretSource().get_secret("alice", "CORP") == "typed"
    assert asked == {"prompt": "Provide password for CORP\\alice", "password": True}


def test_get_secret_source():
    assert isinstance(get_secret_source("ENV"), EnvironmentSecretSource)
    assert isinstance(get_secret_source("keyring"), KeyringSecretSource)
    assert isinstance(get_secret_source("prompt"), TerminalSecretSource)
    with pytest.raises(ConfigurationError):
        get_secret_source("vault")
