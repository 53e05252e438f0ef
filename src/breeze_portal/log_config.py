"""
Logging setup for Breeze Portal processes.

Single log level for all scopes (portal, bus, emulators).
An explicit level (CLI flag) takes precedence over the BREEZE_LOG_LEVEL env.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    level = getattr(logging, raw, None)
    return level if isinstance(level, int) else logging.INFO


def resolve_level(explicit: Optional[str] = None) -> int:
    """
    Resolve log level: explicit value if given, else BREEZE_LOG_LEVEL env, else INFO.
    """
    if explicit:
        return _parse_level(explicit)
    raw = os.environ.get("BREEZE_LOG_LEVEL", "").strip()
    return _parse_level(raw) if raw else logging.INFO


def configure_logging(explicit: Optional[str] = None) -> int:
    """Configure root logging once per process and return the applied level."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    level = resolve_level(explicit)
    logging.getLogger().setLevel(level)
    # paho logs its own socket chatter at DEBUG; keep it out of normal output
    logging.getLogger("paho").setLevel(max(level, logging.INFO))
    return level
