"""Shared test configuration for Guardian."""

import logging

import pytest
import structlog
from guardian.config import get_settings


def pytest_configure(config):
    """Keep structlog quiet below WARNING so reconcile and admission logs stay out of test output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Settings are cached per process; environment overrides must not leak between tests."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
