"""
Breeze Portal configuration.

Single source for runtime configuration. Values come from environment variables,
optionally loaded from standard env files.

Priority (lowest -> highest):
1) /etc/breeze/portal.env (system install)
2) ~/.config/breeze-portal/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable, Optional

DEFAULT_NAMESPACE = "breeze"
_FORBIDDEN_SEGMENT_CHARS = ("/", "+", "#")
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def package_version() -> str:
    try:
        return _pkg_version("breeze-portal")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/breeze/portal.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "breeze-portal" / ".env"

    # 3) project override
    yield Path(".env")


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_float(key: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {key}: {raw!r}") from exc


def _parse_bool(key: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}")


def validate_namespace(namespace: str) -> str:
    if not namespace:
        raise ConfigError("BREEZE_NAMESPACE must be non-empty")
    if any(ch in namespace for ch in _FORBIDDEN_SEGMENT_CHARS):
        raise ConfigError(
            f"BREEZE_NAMESPACE {namespace!r} must be a single topic segment (no '/', '+', '#')"
        )
    return namespace


@dataclass(frozen=True, slots=True)
class PortalConfig:
    mqtt_host: str
    mqtt_port: int
    mqtt_username: Optional[str]
    mqtt_password: Optional[str]
    namespace: str
    status_interval_s: float
    publish_timeout_s: float  # 0 disables waiting for QoS acks
    seed_devices: bool
    version: str
    legacy_topics: bool = False  # also accept <ns>/<id>/<kind>


def load_config(*, dotenv_enabled: bool = True) -> PortalConfig:
    """
    Load config by reading env files (if python-dotenv is installed) and then
    validating environment variables.

    Returns an immutable PortalConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        from dotenv import load_dotenv

        for p in _env_paths():
            if p.is_file():
                # do not override existing env vars; later files can fill missing
                load_dotenv(p, override=False)

    mqtt_host = os.getenv("MQTT_HOST", "localhost").strip()
    if not mqtt_host:
        raise ConfigError("MQTT_HOST must be non-empty")

    mqtt_port = _parse_int("MQTT_PORT", os.getenv("MQTT_PORT", "1883"))
    if not (1 <= mqtt_port <= 65535):
        raise ConfigError(f"MQTT_PORT out of range: {mqtt_port}")

    username = os.getenv("MQTT_USERNAME") or None
    password = os.getenv("MQTT_PASSWORD") or None
    if password and not username:
        raise ConfigError("MQTT_PASSWORD is set but MQTT_USERNAME is missing")

    namespace = validate_namespace(os.getenv("BREEZE_NAMESPACE", DEFAULT_NAMESPACE).strip())

    status_interval_s = _parse_float(
        "BREEZE_STATUS_INTERVAL", os.getenv("BREEZE_STATUS_INTERVAL", "30")
    )
    if status_interval_s <= 0:
        raise ConfigError("BREEZE_STATUS_INTERVAL must be > 0")

    publish_timeout_s = _parse_float(
        "BREEZE_PUBLISH_TIMEOUT", os.getenv("BREEZE_PUBLISH_TIMEOUT", "5")
    )
    if publish_timeout_s < 0:
        raise ConfigError("BREEZE_PUBLISH_TIMEOUT must be >= 0 (0 disables)")

    seed_devices = _parse_bool("BREEZE_SEED_DEVICES", os.getenv("BREEZE_SEED_DEVICES", "0"))
    legacy_topics = _parse_bool("BREEZE_LEGACY_TOPICS", os.getenv("BREEZE_LEGACY_TOPICS", "0"))

    return PortalConfig(
        mqtt_host=mqtt_host,
        mqtt_port=mqtt_port,
        mqtt_username=username,
        mqtt_password=password,
        namespace=namespace,
        status_interval_s=status_interval_s,
        publish_timeout_s=publish_timeout_s,
        seed_devices=seed_devices,
        version=package_version(),
        legacy_topics=legacy_topics,
    )
