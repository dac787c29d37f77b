import logging

import pytest


@pytest.fixture(autouse=True)
def restore_package_logger():
    """configure_logging() mutates the package logger; undo it after each test."""
    logger = logging.getLogger("scratchgpt")
    handlers = list(logger.handlers)
    level = logger.level
    propagate = logger.propagate
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate
