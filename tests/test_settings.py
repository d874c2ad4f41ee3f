import json
import logging

import pytest

from authrelay.model.Core.errors import ConfigurationError
from authrelay.model.Core.HeaderFilter import DEFAULT_HOP_BY_HOP
from authrelay.settings import (LoggingConfig, load_settings, parse_bool, parse_port,
                                setup_logging)


@pytest.fixture
def config_file(tmp_path):
    def write(section, logging_section=None):
        document = {"AuthRelay": section}
        if logging_section is not None:
            document["Logging"] = logging_section
        path = tmp_path / "appsettings.json"
        path.write_text(json.dumps(document), encoding="utf-8")
        return str(path)
    return write


def test_defaults(config_file):
    settings = load_settings(config_file({"UpstreamURI": "http://backend.local/"}), environ={})
    config = settings.proxy
    assert config.upstream_uri == "http://backend.local"
    assert config.local_port == 8001
    assert config.use_default_credentials is False
    assert config.authentication_method == "NTLM"
    assert config.ignored_request_headers == DEFAULT_HOP_BY_HOP
    assert config.listen_hosts == ("127.0.0.1", "localhost")
    assert config.concurrent_requests is False
    assert settings.logging.level == "INFO"


def test_values_from_file(config_file):
    path = config_file({
        "UpstreamURI": "https://api.corp",
        "LocalPort": 9000,
        "UseDefaultCredentials": "True",
        "Domain": "CORP",
        "UserName": "bob",
        "AuthenticationMethod": "Negotiate",
        "IgnoredRequestHeaders": ["X-Debug"],
    }, {"Level": "debug", "File": "logs/relay.log"})
    settings = load_settings(path, environ={})
    config = settings.proxy
    assert config.local_port == 9000
    assert config.use_default_credentials is True
    assert config.domain == "CORP"
    assert config.username == "bob"
    assert config.authentication_method == "Negotiate"
    assert config.ignored_request_headers == ("X-Debug",)
    assert settings.logging == LoggingConfig(level="DEBUG", file="logs/relay.log")


def test_environment_then_command_line_win(config_file):
    path = config_file({"UpstreamURI": "http://file.local", "LocalPort": 9000})
    environ = {"AUTHRELAY_LOCALPORT": "9100", "AUTHRELAY_UPSTREAMURI": "http://env.local",
               "AUTHRELAY_IGNOREDREQUESTHEADERS": "X-A, X-B"}
    settings = load_settings(path, {"LocalPort": 9200, "UserName": None}, environ=environ)
    assert settings.proxy.local_port == 9200
    assert settings.proxy.upstream_uri == "http://env.local"
    assert settings.proxy.ignored_request_headers == ("X-A", "X-B")


def test_missing_upstream_is_fatal(config_file):
    with pytest.raises(ConfigurationError):
        load_settings(config_file({"LocalPort": 8001}), environ={})


def test_relative_upstream_rejected(config_file):
    with pytest.raises(ConfigurationError):
        load_settings(config_file({"UpstreamURI": "backend.local"}), environ={})


def test_explicit_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_settings(str(tmp_path / "nope.json"), environ={})


def test_invalid_json(tmp_path):
    path = tmp_path / "appsettings.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_settings(str(path), environ={})


def test_parse_helpers():
    assert parse_bool("TRUE") is True
    assert parse_bool("false") is False
    assert parse_bool("maybe", default=True) is True
    assert parse_bool(None) is False
    assert parse_port("8080") == 8080
    assert parse_port("eighty") == 8001
    assert parse_port(None) == 8001
    with pytest.raises(ConfigurationError):
        parse_port(70000)


def test_setup_logging_with_file(tmp_path):
    log_file = tmp_path / "logs" / "relay.log"
    logger = setup_logging(LoggingConfig(level="DEBUG", file=str(log_file)))
    logger.info("hello from test")
    for handler in logging.getLogger().handlers:
        handler.flush()
    assert "hello from test" in log_file.read_text(encoding="utf-8")
    logging.basicConfig(force=True)
    logging.getLogger().setLevel(logging.WARNING)


def test_setup_logging_unknown_level():
    with pytest.raises(ConfigurationError):
        setup_logging(LoggingConfig(level="LOUD"))


@pytest.mark.parametrize("key, value", [
    ("MaxWorkers", "many"),
    ("UpstreamTimeout", "soon"),
])
def test_bad_numbers_are_configuration_errors(config_file, key, value):
    path = config_file({"UpstreamURI": "http://backend.local", key: value})
    with pytest.raises(ConfigurationError):
        load_settings(path, environ={})


def test_bad_number_from_environment(config_file):
    path = config_file({"UpstreamURI": "http://backend.local"})
    with pytest.raises(ConfigurationError):
        load_settings(path, environ={"AUTHRELAY_MAXWORKERS": "eight"})
