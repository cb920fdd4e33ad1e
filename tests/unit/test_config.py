"""Unit tests for settings."""

import pytest
from pydantic import ValidationError

from cadence.config import Settings


def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.FRAGMENT_MIN_DELAY == 0.5
    assert settings.FRAGMENT_MAX_DELAY == 8.0
    assert settings.DECISION_MIN_DELAY == 30.0
    assert settings.DECISION_MAX_DELAY == 120.0
    assert settings.MEMORY_MIN_FOR_CONSOLIDATION == 15
    assert settings.MEMORY_MAX_BEFORE_PRUNING == 50
    assert settings.POLL_INTERVAL == 0.1


def test_environment_override(monkeypatch):
    monkeypatch.setenv("CADENCE_LOCK_TTL", "120")
    monkeypatch.setenv("CADENCE_PROVIDER", "ollama")
    settings = Settings(_env_file=None)
    assert settings.LOCK_TTL == 120


def test_inverted_fragment_range_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, FRAGMENT_MIN_DELAY=5.0, FRAGMENT_MAX_DELAY=1.0)


def test_reevaluation_probability_range():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, FRAGMENT_REEVALUATION_PROBABILITY=1.5)
