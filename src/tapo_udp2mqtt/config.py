"""
Bridge configuration.

Values come from environment variables, optionally loaded from standard env
files, and finally from explicit command-line arguments.

Priority (lowest -> highest):
1) /etc/tapo-udp2mqtt/bridge.env (system install)
2) ~/.config/tapo-udp2mqtt/.env (user install)
3) ./.env (project override)
4) process environment variables
5) command-line arguments
"""

from __future__ import annotations

import math
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from dotenv import load_dotenv

from tapo_udp2mqtt.intake import TriggerFilter
from tapo_udp2mqtt.topics import TopicError, validate_publish_topic

DEFAULT_MQTT_PORT = 1883
DEFAULT_UDP_PORT = 20005
DEFAULT_MIN_LEN = 24
DEFAULT_ALLOWED_PREFIX = "192.168.4."
DEFAULT_DEBOUNCE_S = 1.0
DEFAULT_PULSE_MS = 500
DEFAULT_BIND = "0.0.0.0"
DEFAULT_KEEPALIVE = 30
DEFAULT_RECONNECT_S = 10.0


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/tapo-udp2mqtt/bridge.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "tapo-udp2mqtt" / ".env"

    # 3) project override
    yield Path(".env")


def _load_env_files() -> None:
    # override=False never touches variables that are already set, so load the
    # highest-priority file first and let lower ones only fill the gaps.
    for p in reversed(list(_env_paths())):
        if p.is_file():
            load_dotenv(p, override=False)


def _lookup(key: str, overrides: Mapping[str, Any]) -> Optional[str]:
    value = overrides.get(key)
    if value is not None:
        return str(value)
    return os.getenv(key)


def _require(key: str, overrides: Mapping[str, Any]) -> str:
    v = _lookup(key, overrides)
    if v is None or v == "":
        raise ConfigError(f"Missing required setting: {key}")
    return v


def _optional(key: str, overrides: Mapping[str, Any], default: Any) -> str:
    v = _lookup(key, overrides)
    if v is None or v == "":
        return str(default)
    return v


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_float(key: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {key}: {raw!r}") from exc
    if not math.isfinite(value):
        raise ConfigError(f"Invalid number for {key}: {raw!r}")
    return value


def _parse_port(key: str, raw: str) -> int:
    port = _parse_int(key, raw)
    if not (1 <= port <= 65535):
        raise ConfigError(f"{key} out of range: {port}")
    return port


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    mqtt_host: str
    mqtt_topic: str
    mqtt_port: int
    udp_port: int
    min_length: int
    allowed_prefix: str  # "" disables the source filter
    debounce_s: float
    pulse_ms: int
    bind_address: str
    keepalive: int  # 0 disables PINGREQ
    reconnect_s: float  # 0 disables background reconnect

    @property
    def pulse_s(self) -> float:
        return self.pulse_ms / 1000.0

    def trigger_filter(self) -> TriggerFilter:
        return TriggerFilter(
            min_length=self.min_length,
            allowed_prefix=self.allowed_prefix,
            debounce_s=self.debounce_s,
        )


def load_config(
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    dotenv_enabled: bool = True,
) -> BridgeConfig:
    """
    Resolve and validate every setting. ``overrides`` maps environment keys
    to values given on the command line; None entries are ignored.

    Returns an immutable BridgeConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        _load_env_files()
    ov: Mapping[str, Any] = overrides or {}

    mqtt_host = _require("MQTT_HOST", ov)
    try:
        mqtt_topic = validate_publish_topic(_require("MQTT_TOPIC", ov))
    except TopicError as exc:
        raise ConfigError(f"Invalid MQTT_TOPIC: {exc}") from exc

    mqtt_port = _parse_port("MQTT_PORT", _optional("MQTT_PORT", ov, DEFAULT_MQTT_PORT))
    udp_port = _parse_port("UDP_PORT", _optional("UDP_PORT", ov, DEFAULT_UDP_PORT))

    min_length = _parse_int("UDP_MIN_LEN", _optional("UDP_MIN_LEN", ov, DEFAULT_MIN_LEN))
    if min_length < 0:
        raise ConfigError("UDP_MIN_LEN must be >= 0")

    # An explicit empty prefix is meaningful (accept any source), so no _optional here.
    allowed_prefix = _lookup("UDP_ALLOWED_PREFIX", ov)
    if allowed_prefix is None:
        allowed_prefix = DEFAULT_ALLOWED_PREFIX

    debounce_s = _parse_float("DEBOUNCE_S", _optional("DEBOUNCE_S", ov, DEFAULT_DEBOUNCE_S))
    if debounce_s < 0:
        raise ConfigError("DEBOUNCE_S must be >= 0")

    pulse_ms = _parse_int("PULSE_MS", _optional("PULSE_MS", ov, DEFAULT_PULSE_MS))
    if pulse_ms < 0:
        raise ConfigError("PULSE_MS must be >= 0")

    bind_address = _optional("UDP_BIND", ov, DEFAULT_BIND)

    keepalive = _parse_int("MQTT_KEEPALIVE", _optional("MQTT_KEEPALIVE", ov, DEFAULT_KEEPALIVE))
    if not (0 <= keepalive <= 65535):
        raise ConfigError(f"MQTT_KEEPALIVE out of range: {keepalive}")

    reconnect_s = _parse_float(
        "MQTT_RECONNECT_S", _optional("MQTT_RECONNECT_S", ov, DEFAULT_RECONNECT_S)
    )
    if reconnect_s < 0:
        raise ConfigError("MQTT_RECONNECT_S must be >= 0 (0 disables)")

    return BridgeConfig(
        mqtt_host=mqtt_host,
        mqtt_topic=mqtt_topic,
        mqtt_port=mqtt_port,
        udp_port=udp_port,
        min_length=min_length,
        allowed_prefix=allowed_prefix,
        debounce_s=debounce_s,
        pulse_ms=pulse_ms,
        bind_address=bind_address,
        keepalive=keepalive,
        reconnect_s=reconnect_s,
    )
