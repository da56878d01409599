"""
Unit test configuration for muxwatch.

Every unit test runs against its own state directory so nothing touches
the user's ~/.muxwatch.
"""

import logging

import pytest

from muxwatch import config, logging_config


@pytest.fixture(autouse=True)
def isolated_state_dir(tmp_path, monkeypatch):
    """Point MUXWATCH_STATE_DIR (and the import-time paths) at a temp dir."""
    state_dir = tmp_path / "state"
    monkeypatch.setenv("MUXWATCH_STATE_DIR", str(state_dir))
    monkeypatch.delenv("MUXWATCH_TMUX_SOCKET", raising=False)
    monkeypatch.setattr(config, "CONFIG_PATH", state_dir / "config.yaml")
    monkeypatch.setattr(logging_config, "DEFAULT_LOG_DIR", state_dir / "logs")
    return state_dir


@pytest.fixture(autouse=True)
def restore_muxwatch_logger():
    """setup_logging() mutates the shared logger; put it back after each test."""
    logger = logging.getLogger(logging_config.ROOT_LOGGER)
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield
    for handler in logger.handlers:
        if handler not in saved[0]:
            handler.close()
    logger.handlers[:] = saved[0]
    logger.level = saved[1]
    logger.propagate = saved[2]
