"""Service configuration: typed sections and a YAML loader."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.yaml"


class ConfigError(Exception):
    """Raised when the configuration cannot be read or decoded."""


@dataclass
class ServerConfig:
    port: int = 0
    read_timeout: timedelta = timedelta(0)
    write_timeout: timedelta = timedelta(0)
    idle_timeout: timedelta = timedelta(0)

    def port_str(self) -> str:
        """Listen address in the ``:port`` form."""
        return f":{self.port}"


@dataclass
class DatabaseConfig:
    host: str = ""
    port: int = 0
    user: str = ""
    password: str = ""
    name: str = ""
    ssl_mode: str = ""

    def connection_string(self) -> str:
        """PostgreSQL connection URL for these settings."""
        return (
            f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}"
            f"/{self.name}?sslmode={self.ssl_mode}"
        )


@dataclass
class LoggerConfig:
    level: str = ""
    json: bool = False


@dataclass
class MigrationsConfig:
    dir: str = ""


@dataclass
class ApplicationConfig:
    input: str = ""
    output: str = ""
    period: timedelta = timedelta(0)
    queue_size: int = 0
    workers: int = 0
    max_retries: int = 0


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logger: LoggerConfig = field(default_factory=LoggerConfig)
    migration: MigrationsConfig = field(default_factory=MigrationsConfig)
    application: ApplicationConfig = field(default_factory=ApplicationConfig)


_NANOS_PER_UNIT = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}

_DURATION_PART = re.compile(r"([0-9]*(?:\.[0-9]*)?)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text: Any) -> timedelta:
    """Parse a duration such as ``"1h30m"``, ``"1.5s"`` or ``"250ms"``.

    Integers are taken as nanoseconds; ``timedelta`` values pass through.
    """
    if isinstance(text, timedelta):
        return text
    if isinstance(text, bool):
        raise ConfigError(f"invalid duration {text!r}")
    if isinstance(text, (int, float)):
        return timedelta(microseconds=text / 1000)
    if not isinstance(text, str):
        raise ConfigError(f"invalid duration {text!r}")

    raw = text
    sign = 1
    if text[:1] in "+-" and text:
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ConfigError(f"invalid duration {raw!r}")

    total = Decimal(0)
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None or not any(ch.isdigit() for ch in match.group(1)):
            raise ConfigError(f"invalid duration {raw!r}")
        try:
            number = Decimal(match.group(1))
        except InvalidOperation as exc:
            raise ConfigError(f"invalid duration {raw!r}") from exc
        total += number * _NANOS_PER_UNIT[match.group(2)]
        pos = match.end()

    return timedelta(microseconds=float(sign * total / 1000))


_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False", ""}


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def _as_int(value: Any, key: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        if not value:
            return 0
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"cannot decode {key}: {value!r} is not an integer") from exc
    raise ConfigError(f"cannot decode {key}: {value!r} is not an integer")


def _as_bool(value: Any, key: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        if value in _TRUE_WORDS:
            return True
        if value in _FALSE_WORDS:
            return False
    raise ConfigError(f"cannot decode {key}: {value!r} is not a boolean")


def _as_duration(value: Any, key: str) -> timedelta:
    if value is None:
        return timedelta(0)
    try:
        return parse_duration(value)
    except ConfigError as exc:
        raise ConfigError(f"cannot decode {key}: {exc}") from exc


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"cannot decode {name}: expected a mapping")
    return {str(k).lower(): v for k, v in value.items()}


def config_from_dict(data: Mapping[str, Any] | None) -> Config:
    """Build a ``Config`` from a mapping shaped like the YAML file."""
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ConfigError("configuration must be a mapping")
    data = {str(k).lower(): v for k, v in data.items()}

    server = _section(data, "server")
    database = _section(data, "database")
    log = _section(data, "logger")
    migrations = _section(data, "migrations")
    app = _section(data, "application")

    return Config(
        server=ServerConfig(
            port=_as_int(server.get("port"), "server.port"),
            read_timeout=_as_duration(server.get("read_timeout"), "server.read_timeout"),
            write_timeout=_as_duration(server.get("write_timeout"), "server.write_timeout"),
            idle_timeout=_as_duration(server.get("idle_timeout"), "server.idle_timeout"),
        ),
        database=DatabaseConfig(
            host=_as_str(database.get("host")),
            port=_as_int(database.get("port"), "database.port"),
            user=_as_str(database.get("user")),
            password=_as_str(database.get("password")),
            name=_as_str(database.get("name")),
            ssl_mode=_as_str(database.get("ssl_mode")),
        ),
        logger=LoggerConfig(
            level=_as_str(log.get("level")),
            json=_as_bool(log.get("json"), "logger.json"),
        ),
        migration=MigrationsConfig(dir=_as_str(migrations.get("dir"))),
        application=ApplicationConfig(
            input=_as_str(app.get("input_dir")),
            output=_as_str(app.get("output_dir")),
            period=_as_duration(app.get("scan_period"), "application.scan_period"),
            queue_size=_as_int(app.get("queue_size"), "application.queue_size"),
            workers=_as_int(app.get("workers"), "application.workers"),
            max_retries=_as_int(app.get("max_retries"), "application.max_retries"),
        ),
    )


def load(path: str | os.PathLike[str] = DEFAULT_CONFIG_FILE) -> Config:
    """Read and decode the YAML configuration file at ``path``."""
    try:
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except OSError as exc:
        raise ConfigError(f"failed to read config file: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to read config file: {exc}") from exc

    try:
        config = config_from_dict(data)
    except ConfigError as exc:
        raise ConfigError(f"failed to decode config: {exc}") from exc

    logger.info("config loaded successfully")
    return config