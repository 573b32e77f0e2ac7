"""Logging setup shared by the services."""

import logging
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def parse_level(level: Union[int, str]) -> int:
    """Convert a level name like "warning" or a number to a logging level.

    Raises:
        ValueError: If the level name is unknown
    """
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Invalid verbosity: {level}")
    return value


def setup_logging(level: Union[int, str] = logging.INFO, fmt: Optional[str] = None) -> None:
    """Configure root logging once. Later calls only adjust the level."""
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(parse_level(level))
        return
    logging.basicConfig(level=parse_level(level), format=fmt or DEFAULT_FORMAT)
