"""
Pytest configuration shared by all muxwatch tests.
"""

import shutil

import pytest


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line(
        "markers", "e2e: mark test as end-to-end integration test (slow)"
    )
    config.addinivalue_line(
        "markers", "requires_tmux: mark test as requiring tmux"
    )


def pytest_collection_modifyitems(config, items):
    """Skip tmux-dependent tests when tmux isn't installed."""
    if shutil.which("tmux"):
        return
    skip = pytest.mark.skip(reason="tmux not installed or not in PATH")
    for item in items:
        if "requires_tmux" in item.keywords:
            item.add_marker(skip)
