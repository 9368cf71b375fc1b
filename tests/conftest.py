"""Pytest configuration for all tests."""

import os

import pytest


@pytest.fixture(autouse=True)
def isolated_settings_env(monkeypatch):
    """Keep CUTROOM_* variables from the developer's shell out of the tests."""
    for name in list(os.environ):
        if name.upper().startswith("CUTROOM_"):
            monkeypatch.delenv(name, raising=False)
