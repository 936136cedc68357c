# blockml/log.py

from __future__ import annotations

import sys
from typing import Any, Optional, TextIO, Union

from loguru import logger

_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> - {message}"

_handler_id: Optional[int] = None


def configure_logging(level: Union[str, int] = "INFO", sink: Union[TextIO, Any] = sys.stderr) -> int:
    """
    Route blockml's log records to ``sink`` at ``level`` and enable them.

    Calling again replaces the previous blockml handler. Returns the loguru
    handler id.
    """
    global _handler_id
    if _handler_id is not None:
        logger.remove(_handler_id)
    _handler_id = logger.add(
        sink,
        level=level,
        format=_FORMAT,
        filter=lambda record: record["name"].startswith("blockml"),
    )
    logger.enable("blockml")
    return _handler_id


def disable_logging() -> None:
    global _handler_id
    if _handler_id is not None:
        logger.remove(_handler_id)
        _handler_id = None
    logger.disable("blockml")
