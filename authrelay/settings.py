"""
Configuration loading and logging setup.

Settings come from three layers, later ones winning:

    appsettings.json  ->  AUTHRELAY_<KEY> environment variables  ->  command line

The JSON file keeps proxy keys under an "AuthRelay" section and logging
keys under "Logging".
"""

import json
import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

from .model.Core.errors import ConfigurationError
from .model.Core.header import (DEFAULT_AUTH_METHOD, DEFAULT_LISTEN_HOSTS, DEFAULT_LOCAL_PORT,
                                DEFAULT_UPSTREAM_TIMEOUT, ProxyConfig)
from .model.Core.HeaderFilter import DEFAULT_HOP_BY_HOP

logger = logging.getLogger("authrelay.settings")

DEFAULT_CONFIG_FILE = "appsettings.json"
SECTION = "AuthRelay"
ENV_PREFIX = "AUTHRELAY_"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

PROXY_KEYS = (
    "LocalPort",
    "UpstreamURI",
    "UseDefaultCredentials",
    "Domain",
    "UserName",
    "AuthenticationMethod",
    "IgnoredRequestHeaders",
    "ListenHosts",
    "UpstreamTimeout",
    "VerifyTls",
    "SecretSource",
    "ConcurrentRequests",
    "MaxWorkers",
)


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None
    max_bytes: int = 1_000_000
    backup_count: int = 3


@dataclass(frozen=True)
class Settings:
    proxy: ProxyConfig
    logging: LoggingConfig


def parse_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in ("true", "1", "yes", "on"):
        return True
    if text in ("false", "0", "no", "off"):
        return False
    logger.warning(f"Cannot read {value!r} as a boolean, using {default}")
    return default


def parse_port(value: Any, default: int = DEFAULT_LOCAL_PORT) -> int:
    if value is None or value == "":
        return default
    try:
        port = int(value)
    except (TypeError, ValueError):
        logger.warning(f"Cannot read {value!r} as a port, using {default}")
        return default
    if not 0 <= port <= 65535:
        raise ConfigurationError(f"LocalPort {port} is out of range")
    return port


def parse_number(value: Any, name: str, default, kind=int):
    if value is None or value == "":
        return default
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None


def parse_list(value: Any):
    if value is None:
        return None
    if isinstance(value, str):
        return tuple(item.strip() for item in value.split(",") if item.strip())
    return tuple(str(item) for item in value if item is not None)


def read_config_file(path: Optional[str]) -> Dict[str, Any]:
    """Return the parsed JSON document, {} when the default file is absent."""
    explicit = path is not None
    config_path = Path(path or DEFAULT_CONFIG_FILE)
    if not config_path.exists():
        if explicit:
            raise ConfigurationError(f"Config file {config_path} not found")
        return {}
    try:
        with config_path.open("r", encoding="utf-8") as fh:
            document = json.load(fh)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Config file {config_path} is not valid JSON: {e}") from e
    if not isinstance(document, dict):
        raise ConfigurationError(f"Config file {config_path} must hold a JSON object")
    return document


def environment_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides = {}
    for key in PROXY_KEYS:
        env_name = ENV_PREFIX + key.upper()
        if env_name in environ:
            overrides[key] = environ[env_name]
    return overrides


def build_proxy_config(values: Mapping[str, Any]) -> ProxyConfig:
    upstream = (values.get("UpstreamURI") or "").strip()
    if not upstream:
        raise ConfigurationError("Upstream URI is empty")
    parts = urlsplit(upstream)
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        raise ConfigurationError(f"Upstream URI {upstream!r} must be an absolute http(s) URI")

    ignored = parse_list(values.get("IgnoredRequestHeaders"))
    if ignored is None:
        ignored = DEFAULT_HOP_BY_HOP

    max_workers = parse_number(values.get("MaxWorkers"), "MaxWorkers", 8)
    if max_workers < 1:
        raise ConfigurationError("MaxWorkers must be at least 1")

    return ProxyConfig(
        # Raw paths always start with "/"
        upstream_uri=upstream.rstrip("/"),
        local_port=parse_port(values.get("LocalPort")),
        use_default_credentials=parse_bool(values.get("UseDefaultCredentials")),
        domain=values.get("Domain") or "",
        username=values.get("UserName") or "",
        authentication_method=values.get("AuthenticationMethod") or DEFAULT_AUTH_METHOD,
        ignored_request_headers=tuple(ignored),
        listen_hosts=parse_list(values.get("ListenHosts")) or DEFAULT_LISTEN_HOSTS,
        upstream_timeout=parse_number(values.get("UpstreamTimeout"), "UpstreamTimeout",
                                      DEFAULT_UPSTREAM_TIMEOUT, float),
        verify_tls=parse_bool(values.get("VerifyTls"), default=True),
        secret_source=(values.get("SecretSource") or "prompt").lower(),
        concurrent_requests=parse_bool(values.get("ConcurrentRequests")),
        max_workers=max_workers,
    )


def load_settings(path: Optional[str] = None, overrides: Optional[Mapping[str, Any]] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    document = read_config_file(path)
    section = dict(document.get(SECTION) or {})
    section.update(environment_overrides(os.environ if environ is None else environ))
    section.update({k: v for k, v in (overrides or {}).items() if v is not None})

    log_section = document.get("Logging") or {}
    log_level = (overrides or {}).get("LogLevel") or log_section.get("Level") or "INFO"
    logging_config = LoggingConfig(
        level=str(log_level).upper(),
        file=log_section.get("File"),
        max_bytes=parse_number(log_section.get("MaxBytes"), "MaxBytes", LoggingConfig.max_bytes),
        backup_count=parse_number(log_section.get("BackupCount"), "BackupCount",
                                  LoggingConfig.backup_count),
    )
    return Settings(proxy=build_proxy_config(section), logging=logging_config)


def setup_logging(config: LoggingConfig) -> logging.Logger:
    """Stream handler, plus a rotating file when one is configured."""
    level = getattr(logging, config.level, None)
    if not isinstance(level, int):
        raise ConfigurationError(f"Unknown log level {config.level!r}")

    handlers = [logging.StreamHandler()]
    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(config.file, maxBytes=config.max_bytes,
                                            backupCount=config.backup_count))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    return logging.getLogger("authrelay")
