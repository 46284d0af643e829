"""Configuration of the visualizer server."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

from gofka.config import ConfigError, _as_bool, _as_int, _as_str, _field, _read_settings


class VisualizerConfigError(ConfigError):
    """Raised when the visualizer configuration is unusable."""


@dataclass
class ServerSettings:
    address: str = ""
    grpc_port: int = 0
    web_port: int = 0


@dataclass
class VisualizerSettings:
    enabled: bool = False


@dataclass
class Settings:
    server: ServerSettings = field(default_factory=ServerSettings)
    visualizer: VisualizerSettings = field(default_factory=VisualizerSettings)


DEFAULTS: dict[str, Any] = {
    "server.address": "localhost",
    "server.web_port": 42069,
    "server.grpc_port": 42169,
}


def load_config(path: str | os.PathLike) -> Settings:
    """Read, decode and validate the visualizer configuration at ``path``."""
    try:
        s = _read_settings(path, DEFAULTS)
        settings = Settings(
            server=ServerSettings(
                address=_field(s, "server.address", _as_str),
                grpc_port=_field(s, "server.grpc_port", _as_int),
                web_port=_field(s, "server.web_port", _as_int),
            ),
            visualizer=VisualizerSettings(enabled=_field(s, "visualizer.enabled", _as_bool)),
        )
    except VisualizerConfigError:
        raise
    except ConfigError as exc:
        raise VisualizerConfigError(str(exc)) from exc
    try:
        validate(settings)
    except VisualizerConfigError as exc:
        raise VisualizerConfigError(f"configuration validation failed: {exc}") from exc
    return settings


def validate(settings: Settings) -> None:
    """Raise VisualizerConfigError on the first invalid setting."""
    server = settings.server
    if server.grpc_port == 0:
        raise VisualizerConfigError("server.grpc_port is required")
    if server.web_port == 0:
        raise VisualizerConfigError("server.web_port is required")
    if not server.address:
        raise VisualizerConfigError("server.address is required")
    if server.grpc_port <= 0 or server.grpc_port > 65535:
        raise VisualizerConfigError("server.grpc_port must be between 1 and 65535")
    if server.web_port <= 0 or server.web_port > 65535:
        raise VisualizerConfigError("server.web_port must be between 1 and 65535")
    if server.web_port == server.grpc_port:
        raise VisualizerConfigError("server.grpc_port must be different than server.web_port")