"""Configuration for async-genai.

Config discovery (first match wins):
  1. explicit ``path`` argument
  2. ``./async_genai.yaml``
  3. ``~/.config/async-genai/config.yaml``
  4. Built-in defaults

The API key falls back to the ``OPENAI_API_KEY`` environment variable when
the file does not set one.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from async_genai.exceptions import ConfigurationError

_logger = logging.getLogger(__name__)

_API_KEY_ENV = "OPENAI_API_KEY"


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class RetrySpec:
    """Backoff policy settings (seconds)."""

    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 20.0
    jitter: float = 0.5  # +/- fraction of the computed delay
    max_attempts: int = 5  # retries after the first attempt
    max_elapsed: float = 120.0


@dataclass
class StreamSpec:
    """Streaming settings."""

    max_frame_size: int = 1024 * 1024
    read_timeout: float = 60.0


@dataclass
class RealtimeSpec:
    """Realtime WebSocket settings."""

    url: str = "wss://api.openai.com/v1/realtime"
    model: str = ""
    idle_timeout: float = 60.0
    ping_interval: float | None = 20.0
    ping_timeout: float | None = 20.0
    reconnect: bool = True
    correlation_key: str = "request_id"
    queue_size: int = 0  # 0 = unbounded
    extra_headers: dict[str, str] = field(default_factory=dict)


@dataclass
class ClientConfig:
    """Top-level config for async-genai."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    organization: str = ""
    project: str = ""
    timeout: float = 120.0
    connect_timeout: float = 30.0
    extra_headers: dict[str, str] = field(default_factory=dict)

    retry: RetrySpec = field(default_factory=RetrySpec)
    stream: StreamSpec = field(default_factory=StreamSpec)
    realtime: RealtimeSpec = field(default_factory=RealtimeSpec)

    def headers(self) -> dict[str, str]:
        """HTTP headers every request carries."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if self.organization:
            headers["OpenAI-Organization"] = self.organization
        if self.project:
            headers["OpenAI-Project"] = self.project
        headers.update(self.extra_headers)
        return headers


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./async_genai.yaml"),
    Path.home() / ".config" / "async-genai" / "config.yaml",
]


def _parse_section(cls: type, raw: dict[str, Any] | None, section: str) -> Any:
    """Build a spec dataclass from a raw mapping, ignoring unknown keys."""
    if not raw:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"'{section}' must be a mapping, got {type(raw).__name__}",
            config_key=section,
        )
    types = {f.name: f.type for f in fields(cls)}
    kwargs = {}
    for key, value in raw.items():
        if key not in types or value is None:
            continue
        convert = _NUMERIC_TYPES.get(types[key])
        kwargs[key] = value if convert is None else _number(value, convert, f"{section}.{key}")
    unknown = sorted(set(raw) - set(types))
    if unknown:
        _logger.warning("Ignoring unknown %s keys: %s", section, ", ".join(unknown))
    return cls(**kwargs)


# Field annotations are strings under ``from __future__ import annotations``.
_NUMERIC_TYPES = {"int": int, "float": float, "float | None": float}


def _number(value: Any, convert: type, key: str) -> Any:
    """Coerce a YAML scalar to *convert*, or raise ConfigurationError."""
    if isinstance(value, bool):
        raise ConfigurationError(f"{key} must be a number, got {value!r}", config_key=key)
    try:
        number = convert(value)
        exact = convert is float or float(value) == number
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{key} must be a number, got {value!r}", config_key=key) from e
    if not exact:
        raise ConfigurationError(f"{key} must be a whole number, got {value!r}", config_key=key)
    return number


def _check(config: ClientConfig) -> ClientConfig:
    retry = config.retry
    if retry.base_delay < 0 or retry.max_delay < 0:
        raise ConfigurationError("retry delays must be >= 0", config_key="retry")
    if retry.multiplier < 1:
        raise ConfigurationError("retry.multiplier must be >= 1", config_key="retry.multiplier")
    if not 0 <= retry.jitter <= 1:
        raise ConfigurationError("retry.jitter must be within [0, 1]", config_key="retry.jitter")
    if retry.max_attempts < 0:
        raise ConfigurationError("retry.max_attempts must be >= 0", config_key="retry.max_attempts")
    if config.stream.max_frame_size <= 0:
        raise ConfigurationError(
            "stream.max_frame_size must be positive", config_key="stream.max_frame_size",
        )
    if config.realtime.idle_timeout <= 0:
        raise ConfigurationError(
            "realtime.idle_timeout must be positive", config_key="realtime.idle_timeout",
        )
    return config


def load_config(path: str | Path | None = None) -> ClientConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    ClientConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            config_path = None
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    raw: dict[str, Any] = {}
    if config_path is None:
        _logger.info("No config file found, using defaults")
    else:
        _logger.info("Loading config from %s", config_path)
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{config_path}: top level must be a mapping")

    defaults = ClientConfig()
    config = ClientConfig(
        base_url=raw.get("base_url", defaults.base_url),
        api_key=raw.get("api_key") or os.environ.get(_API_KEY_ENV, ""),
        organization=raw.get("organization", ""),
        project=raw.get("project", ""),
        timeout=_number(raw.get("timeout", defaults.timeout), float, "timeout"),
        connect_timeout=_number(
            raw.get("connect_timeout", defaults.connect_timeout), float, "connect_timeout",
        ),
        extra_headers=raw.get("extra_headers", {}),
        retry=_parse_section(RetrySpec, raw.get("retry"), "retry"),
        stream=_parse_section(StreamSpec, raw.get("stream"), "stream"),
        realtime=_parse_section(RealtimeSpec, raw.get("realtime"), "realtime"),
    )
    return _check(config)
