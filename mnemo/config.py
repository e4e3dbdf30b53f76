"""Memory configuration.

Resolution order (later wins):
1. Built-in defaults
2. ``<mnemo home>/config.json`` (the ``"memory"`` section)
3. ``MNEMO_*`` environment variables
"""

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from mnemo.protocols import ValidationError
from mnemo.utils import get_mnemo_home

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemoryConfig:
    """Configuration for the memory manager."""

    # Maximum tokens for short-term memory (conversation context)
    short_term_limit: int = 4096
    long_term_enabled: bool = True
    vector_search_enabled: bool = True
    # Apply decay every N remembered items (0 disables)
    consolidation_interval: int = 10
    max_memories: int = 1000
    # 0-1, lower = slower decay
    decay_rate: float = 0.1
    importance_threshold: float = 0.3

    def __post_init__(self) -> None:
        if self.short_term_limit <= 0:
            raise ValidationError("short_term_limit must be positive")
        if self.max_memories <= 0:
            raise ValidationError("max_memories must be positive")
        if self.consolidation_interval < 0:
            raise ValidationError("consolidation_interval cannot be negative")
        if not 0.0 <= self.decay_rate <= 1.0:
            raise ValidationError("decay_rate must be between 0 and 1")
        if not 0.0 <= self.importance_threshold <= 1.0:
            raise ValidationError("importance_threshold must be between 0 and 1")


_ENV_OVERRIDES = {
    "MNEMO_SHORT_TERM_LIMIT": "short_term_limit",
    "MNEMO_LONG_TERM_ENABLED": "long_term_enabled",
    "MNEMO_VECTOR_SEARCH_ENABLED": "vector_search_enabled",
    "MNEMO_CONSOLIDATION_INTERVAL": "consolidation_interval",
    "MNEMO_MAX_MEMORIES": "max_memories",
    "MNEMO_DECAY_RATE": "decay_rate",
    "MNEMO_IMPORTANCE_THRESHOLD": "importance_threshold",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _coerce(name: str, raw: Any) -> Any:
    """Coerce a raw config value to the type of the named field."""
    kind = {f.name: f.type for f in fields(MemoryConfig)}[name]
    try:
        if kind in (bool, "bool"):
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            if text in _TRUE_VALUES:
                return True
            if text in _FALSE_VALUES:
                return False
            raise ValueError(raw)
        if kind in (int, "int"):
            return int(raw)
        return float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid value for {name}: {raw!r}") from None


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}
    section = data.get("memory", {}) if isinstance(data, dict) else {}
    return section if isinstance(section, dict) else {}


def load_config(path: Optional[Path] = None, **overrides: Any) -> MemoryConfig:
    """Build a MemoryConfig from file, environment and explicit overrides."""
    known = {f.name for f in fields(MemoryConfig)}
    values: Dict[str, Any] = {}

    config_path = path or (get_mnemo_home() / "config.json")
    for key, raw in _read_config_file(config_path).items():
        if key in known:
            values[key] = _coerce(key, raw)
        else:
            logger.debug(f"Unknown config key ignored: {key}")

    for env_name, field_name in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is not None and raw != "":
            values[field_name] = _coerce(field_name, raw)

    for key, raw in overrides.items():
        if key not in known:
            raise ValidationError(f"Unknown config option: {key}")
        values[key] = raw

    return replace(MemoryConfig(), **values)
