"""
Logging configuration for cleaner output.

Usage:
    from opportunity_engine import logging_config
    logging_config.setup()
"""

import logging
import sys
from typing import Union


def setup(level: Union[str, int] = logging.INFO):
    """
    Configure logging for cleaner, more readable output.

    - Uses shorter timestamp format (HH:MM:SS instead of full datetime)
    - Keeps the aiohttp access log quiet unless debugging
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    # Root logger - minimal format
    root = logging.getLogger()
    root.setLevel(level)

    # Clear existing handlers
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)

    # Minimal format: time + level + message
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-7s | %(message)s", datefmt="%H:%M:%S"
    )
    console.setFormatter(formatter)
    root.addHandler(console)

    if level > logging.DEBUG:
        logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    else:
        logging.getLogger("aiohttp.access").setLevel(logging.INFO)

    logging.getLogger("opportunity_engine").setLevel(level)

