import logging

import pytest

from pnl_engine.config import EngineSettings
from pnl_engine.logging import setup_logging
from pnl_engine.telemetry import setup_telemetry


@pytest.fixture
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_logging_installs_one_handler(_restore_root_logger):
    root = _restore_root_logger
    before = len(root.handlers)

    setup_logging("debug")
    setup_logging(logging.WARNING)

    assert len(root.handlers) == before + 1
    assert root.level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING


def test_setup_logging_rejects_unknown_level(_restore_root_logger):
    with pytest.raises(ValueError):
        setup_logging("chatty")


def test_telemetry_disabled_by_default():
    assert setup_telemetry(EngineSettings()) is False
