"""Shared fixtures: a scripted model gateway and settings that need no real API key."""

from __future__ import annotations

import pytest

from ragmaster.config.settings import get_settings

from fakes import ScriptedGateway, accepting_responder


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "test-key")
    monkeypatch.setenv("COOLDOWN_SECONDS", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway(accepting_responder)
