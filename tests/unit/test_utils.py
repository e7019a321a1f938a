"""Tests for the utils module."""

import json
import logging

import pytest

from opportunity_engine.types import RiskTier
from opportunity_engine.utils import (
    clamp,
    deep_merge,
    floored_ratio,
    format_duration,
    format_usd,
    get_logger,
    safe_json_dump,
    timestamp_to_iso,
)


def test_timestamp_to_iso():
    """Test timestamp to ISO conversion."""
    assert timestamp_to_iso(0) == "1970-01-01T00:00:00+00:00"


def test_format_duration():
    """Test duration formatting."""
    assert format_duration(30.5) == "30.50s"
    assert format_duration(90) == "1.5m"
    assert format_duration(7200) == "2.0h"


def test_safe_json_dump_handles_enums():
    data = {"tier": RiskTier.HIGH, "count": 2}
    result = json.loads(safe_json_dump(data))
    assert result == {"tier": "HIGH", "count": 2}


def test_clamp():
    """Test value clamping."""
    assert clamp(5, 0, 10) == 5
    assert clamp(-5, 0, 10) == 0
    assert clamp(15, 0, 10) == 10
    assert clamp(1.7) == 1.0
    assert clamp(-0.2) == 0.0


@pytest.mark.parametrize("denominator", [0.0, -5.0])
def test_floored_ratio_never_raises(denominator):
    ratio = floored_ratio(1.0, denominator)
    assert ratio == pytest.approx(1e9)


def test_floored_ratio_regular_division():
    assert floored_ratio(10.0, 4.0) == 2.5


def test_deep_merge():
    """Test dictionary deep merging."""
    base = {"dispatch": {"batch_size": 1000, "worker_count": 8}, "name": "a"}
    update = {"dispatch": {"batch_size": 500}, "decision": {"min_profit_usd": 2}}

    result = deep_merge(base, update)

    assert result == {
        "dispatch": {"batch_size": 500, "worker_count": 8},
        "decision": {"min_profit_usd": 2},
        "name": "a",
    }
    assert base["dispatch"]["batch_size"] == 1000


def test_format_usd():
    assert format_usd(12.5) == "+$12.50"
    assert format_usd(-1234.567) == "-$1,234.57"
    assert format_usd(0) == "+$0.00"


def test_get_logger_with_extra():
    logger = get_logger("opportunity_engine.test", extra={"runner": 3})
    assert isinstance(logger, logging.LoggerAdapter)
    assert logger.extra == {"runner": 3}

    plain = get_logger("opportunity_engine.test.plain")
    assert isinstance(plain, logging.Logger)
