"""
Small helpers shared across the opportunity engine: time and money
formatting, JSON output for summaries, config merging and the bounded
arithmetic used by the scorers.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union


def timestamp_to_iso(timestamp: float) -> str:
    """UTC ISO 8601 form of a Unix timestamp."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def format_duration(seconds: float) -> str:
    """Render a duration as seconds, minutes or hours, e.g. ``1.5m``."""
    if seconds >= 3600:
        return f"{seconds / 3600:.1f}h"
    if seconds >= 60:
        return f"{seconds / 60:.1f}m"
    return f"{seconds:.2f}s"


def format_usd(amount: float) -> str:
    """Signed dollar amount with thousands separators, e.g. ``+$12.50``."""
    sign = "-" if amount < 0 else "+"
    return f"{sign}${abs(amount):,.2f}"


def safe_json_dump(data: Any, **kwargs) -> str:
    """
    Serialize ``data`` as indented JSON.

    Enums are written as their values, datetimes as ISO strings and other
    objects through their ``__dict__`` (or ``str`` as a last resort).
    Keyword arguments override the ``json.dumps`` defaults.
    """
    options = {"ensure_ascii": False, "indent": 2, "default": _to_jsonable}
    options.update(kwargs)
    return json.dumps(data, **options)


def _to_jsonable(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "__dict__"):
        return vars(obj)
    return str(obj)


def clamp(value: float, min_val: float = 0.0, max_val: float = 1.0) -> float:
    """Bound ``value`` to ``[min_val, max_val]`` (the unit interval by default)."""
    return min(max(value, min_val), max_val)


def floored_ratio(numerator: float, denominator: float, floor: float = 1e-9) -> float:
    """
    ``numerator / denominator`` with the denominator raised to at least
    ``floor``, so zero or negative denominators give a large finite ratio
    instead of raising.
    """
    return numerator / max(denominator, floor)


def deep_merge(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively overlay ``update`` on ``base``.

    Nested mappings are merged key by key; any other value in ``update``
    replaces the one in ``base``. Neither input is modified.
    """
    merged = dict(base)
    for key, value in update.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def get_logger(
    name: str,
    level: Union[str, int] = logging.INFO,
    extra: Optional[Dict[str, Any]] = None,
) -> Union[logging.Logger, logging.LoggerAdapter]:
    """
    Module logger with a default level.

    The level is only applied when the logger has none of its own; handlers
    stay with ``logging_config.setup``. With ``extra`` the logger is wrapped
    in a LoggerAdapter that attaches those fields to every record.
    """
    logger = logging.getLogger(name)
    if logger.level == logging.NOTSET:
        logger.setLevel(level)
    if not extra:
        return logger
    return logging.LoggerAdapter(logger, dict(extra))
