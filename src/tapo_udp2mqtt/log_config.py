"""
Logging setup for the bridge.

Status lines go to stdout. Level: --log-level if given, else the
TAPO_LOG_LEVEL environment variable, else INFO.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    return int(getattr(logging, raw, logging.INFO))


def resolve_level(cli_level: Optional[str] = None) -> int:
    if cli_level:
        return _parse_level(cli_level)
    raw = os.environ.get("TAPO_LOG_LEVEL", "").strip()
    return _parse_level(raw) if raw else logging.INFO


def configure_logging(cli_level: Optional[str] = None) -> None:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, stream=sys.stdout)
    logging.getLogger().setLevel(resolve_level(cli_level))
