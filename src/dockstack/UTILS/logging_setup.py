"""
structlog configuration shared by the CLI and the engine.
"""
import logging
import sys
from typing import Any, Union

import structlog


def configure_logging(level: Union[int, str] = logging.INFO, json: bool = False) -> None:
    """
    Configure the structlog/standard logging bridge.

    :param level: Minimum level, as a logging constant or name.
    :param json: Render JSON lines instead of the console format.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
    renderer: Any = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            timestamper,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr, force=True)


def bind_context(**kwargs: Any) -> structlog.stdlib.BoundLogger:
    """Bind contextual fields for downstream logs."""
    logger = structlog.get_logger()
    return logger.bind(**kwargs)
