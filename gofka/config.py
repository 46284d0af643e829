"""Node configuration: YAML file, built-in defaults and environment overrides."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

import yaml


class ConfigError(ValueError):
    """Raised when a configuration cannot be read, decoded or validated."""


@dataclass
class ClusterConfig:
    peers: dict[str, str] = field(default_factory=dict)


@dataclass
class ServerConfig:
    node_id: str = ""
    roles: list[str] = field(default_factory=list)
    address: str = ""
    port: int = 0
    max_retries: int = 0
    initial_backoff: float = 0.0
    cluster: ClusterConfig = field(default_factory=ClusterConfig)


@dataclass
class KraftConfig:
    timeout: float = 0.0
    grace_period: float = 0.0


@dataclass
class ReplicaConfig:
    fetch_interval: float = 0.0


@dataclass
class ConsumerGroupConfig:
    joining_duration: float = 0.0


@dataclass
class BrokerConfig:
    controller_address: str = ""
    heartbeat_interval: float = 0.0
    metadata_interval: float = 0.0
    max_lag_timeout: float = 0.0
    replica: ReplicaConfig = field(default_factory=ReplicaConfig)
    consumer_group: ConsumerGroupConfig = field(default_factory=ConsumerGroupConfig)


@dataclass
class VisualizerConfig:
    enabled: bool = False
    address: str = ""


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    kraft: KraftConfig = field(default_factory=KraftConfig)
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    visualizer: VisualizerConfig = field(default_factory=VisualizerConfig)


DEFAULTS: dict[str, Any] = {
    "kraft.timeout": "5s",
    "kraft.grace_period": "10s",
    "server.address": "localhost",
    "server.port": 9092,
    "server.initial_backoff": "250ms",
    "broker.heartbeat_interval": "250ms",
    "broker.metadata_interval": "250ms",
    "broker.replica.fetch_interval": "750ms",
    "broker.consumer_group.joining_duration": "750ms",
    "visualizer.enabled": False,
}

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def parse_duration(value: Any) -> float:
    """Return a duration in seconds.

    Strings use the "1h30m", "250ms" notation; bare numbers count nanoseconds.
    """
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration {value!r}")
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, (int, float)):
        return value / 1e9
    if not isinstance(value, str):
        raise ConfigError(f"invalid duration {value!r}")

    text = value
    sign = 1.0
    if text[:1] in ("+", "-"):
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0
    if not text:
        raise ConfigError(f"invalid duration {value!r}")

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ConfigError(f"invalid duration {value!r}")
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    return sign * total


def _lower_keys(node: Any) -> Any:
    if isinstance(node, dict):
        return {str(key).lower(): _lower_keys(value) for key, value in node.items()}
    return node


def _merge(target: dict, source: dict) -> None:
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = value


def _apply_env(node: dict, prefix: tuple[str, ...]) -> None:
    for key, value in node.items():
        path = prefix + (key,)
        if isinstance(value, dict) and value:
            _apply_env(value, path)
            continue
        name = "_".join(path).upper()
        if name in os.environ:
            node[key] = os.environ[name]


def _read_settings(path: str | os.PathLike, defaults: dict[str, Any]) -> dict:
    """Merge defaults, the YAML file and environment overrides into one tree."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"failed to read config file: {exc}") from exc
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to read config file: {exc}") from exc
    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise ConfigError("failed to read config file: top level must be a mapping")

    settings: dict = {}
    for dotted, value in defaults.items():
        node = settings
        *parents, leaf = dotted.split(".")
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value
    _merge(settings, _lower_keys(loaded))
    _apply_env(settings, ())
    return settings


def _get(settings: dict, dotted: str) -> Any:
    node: Any = settings
    for part in dotted.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def _as_str(value: Any, key: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ConfigError(f"unable to decode {key}: expected a string")


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
        if value == "":
            return 0
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"unable to decode {key}: {value!r} is not an integer") from exc
    raise ConfigError(f"unable to decode {key}: expected an integer")


def _as_bool(value: Any, key: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        if value == "" or value in _FALSE:
            return False
        if value in _TRUE:
            return True
    raise ConfigError(f"unable to decode {key}: {value!r} is not a boolean")


def _as_list(value: Any, key: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split(",") if value else []
    if isinstance(value, (list, tuple)):
        return [_as_str(item, key) for item in value]
    raise ConfigError(f"unable to decode {key}: expected a list")


def _as_map(value: Any, key: str) -> dict[str, str]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): _as_str(v, key) for k, v in value.items()}
    raise ConfigError(f"unable to decode {key}: expected a mapping")


def _as_duration(value: Any, key: str) -> float:
    if value is None:
        return 0.0
    try:
        return parse_duration(value)
    except ConfigError as exc:
        raise ConfigError(f"unable to decode {key}: {exc}") from exc


def _field(settings: dict, key: str, convert: Callable[[Any, str], Any]) -> Any:
    return convert(_get(settings, key), key)


def load_config(path: str | os.PathLike) -> Config:
    """Read, decode and validate the node configuration at ``path``."""
    s = _read_settings(path, DEFAULTS)
    config = Config(
        server=ServerConfig(
            node_id=_field(s, "server.node_id", _as_str),
            roles=_field(s, "server.roles", _as_list),
            address=_field(s, "server.address", _as_str),
            port=_field(s, "server.port", _as_int),
            max_retries=_field(s, "server.max_reconnection_retries", _as_int),
            initial_backoff=_field(s, "server.initial_backoff", _as_duration),
            cluster=ClusterConfig(peers=_field(s, "server.cluster.peers", _as_map)),
        ),
        kraft=KraftConfig(
            timeout=_field(s, "kraft.timeout", _as_duration),
            grace_period=_field(s, "kraft.grace_period", _as_duration),
        ),
        broker=BrokerConfig(
            controller_address=_field(s, "broker.controller_address", _as_str),
            heartbeat_interval=_field(s, "broker.heartbeat_interval", _as_duration),
            metadata_interval=_field(s, "broker.metadata_interval", _as_duration),
            max_lag_timeout=_field(s, "broker.max_lag_timeout", _as_duration),
            replica=ReplicaConfig(
                fetch_interval=_field(s, "broker.replica.fetch_interval", _as_duration)
            ),
            consumer_group=ConsumerGroupConfig(
                joining_duration=_field(
                    s, "broker.consumer_group.joining_duration", _as_duration
                )
            ),
        ),
        visualizer=VisualizerConfig(
            enabled=_field(s, "visualizer.enabled", _as_bool),
            address=_field(s, "visualizer.address", _as_str),
        ),
    )
    try:
        validate(config)
    except ConfigError as exc:
        raise ConfigError(f"configuration validation failed: {exc}") from exc
    return config


def validate(config: Config) -> None:
    """Raise ConfigError on the first invalid setting."""
    server = config.server
    if not server.node_id:
        raise ConfigError("server.node_id is required")
    if not server.address:
        raise ConfigError("server.address is required")
    if "broker" in server.roles and not config.broker.controller_address:
        raise ConfigError("broker.controller_address is required")
    if server.port <= 0 or server.port > 65535:
        raise ConfigError("server.port must be between 1 and 65535")
    if config.kraft.timeout <= 0:
        raise ConfigError("kraft.timeout must be positive")
    if config.kraft.grace_period <= 0:
        raise ConfigError("kraft.grace_period must be positive")