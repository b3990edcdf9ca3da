"""Shared fixtures for the flowforge test suite."""

import pytest

from flowforge.observability import clear_trace_context


@pytest.fixture(autouse=True)
def _clean_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    """Point FLOWFORGE_CONFIG at a (missing) file under tmp_path."""
    config_path = tmp_path / "configuration.json"
    monkeypatch.setenv("FLOWFORGE_CONFIG", str(config_path))
    return config_path
