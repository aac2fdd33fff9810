"""Pytest configuration and shared fixtures."""

import pytest

# The myhome testing plugin is registered via a ``pytest11`` entry point
# (pyproject.toml) for external consumers.  In our own test suite it is
# disabled (``-p no:myhome``) and loaded here instead, so that the
# myhome import chain happens after coverage tracing starts.
pytest_plugins = ["myhome.testing._plugin"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Scenario tests wiring several components"
    )
