"""Structured logging setup for the controller and admission webhook."""

import logging
from typing import Any

import structlog


def configure_logging(level: int | str = logging.INFO, *, json: bool = True) -> None:
    """Configure structlog/standard logging bridge.

    ``json=False`` swaps the JSON renderer for the console renderer, which is
    easier to read when running the webhook locally.
    """

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    renderer: Any = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s")


def bind_cluster(cluster_id: str, **kwargs: Any) -> structlog.stdlib.BoundLogger:
    """Return a logger bound to one cluster's scope."""

    logger = structlog.get_logger()
    return logger.bind(cluster_id=cluster_id, **kwargs)
