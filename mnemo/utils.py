"""Shared helpers for mnemo."""

import math
import os
import secrets
from datetime import datetime
from pathlib import Path


def get_mnemo_home() -> Path:
    """Directory holding mnemo data (config, logs, lesson files).

    ``MNEMO_DATA_DIR`` overrides the default ``~/.mnemo``.
    """
    override = os.environ.get("MNEMO_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".mnemo"


def estimate_tokens(text: str) -> int:
    """Rough token estimate (4 characters per token)."""
    return math.ceil(len(text) / 4)


def generate_session_id(now: datetime) -> str:
    """``session-<epoch ms hex>-<6 random hex chars>``."""
    millis = int(now.timestamp() * 1000)
    return f"session-{millis:x}-{secrets.token_hex(3)}"
