"""Tests for logging configuration."""

import logging

from intake_funnel.app_logging import configure_logging


def _stream_handlers(logger: logging.Logger) -> list[logging.Handler]:
    handlers = logger.handlers
    return [handler for handler in handlers if type(handler) is logging.StreamHandler]


def test_configure_logging_idempotent() -> None:
    logger = logging.getLogger("intake_funnel")
    logger.handlers.clear()

    configure_logging()
    first_count = len(_stream_handlers(logger))

    configure_logging()
    second_count = len(_stream_handlers(logger))

    assert first_count == 1
    assert second_count == 1


def test_configure_logging_accepts_level_names() -> None:
    logger = logging.getLogger("intake_funnel")
    logger.handlers.clear()

    configure_logging("debug")
    assert logger.level == logging.DEBUG

    configure_logging(logging.WARNING)
    assert logger.level == logging.WARNING
    assert len(_stream_handlers(logger)) == 1
