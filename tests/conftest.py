from unittest.mock import Mock

import pytest


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("CLASSIFIER_AI_MODE", "mock")
    monkeypatch.delenv("CLASSIFIER_AI_MODEL", raising=False)
    monkeypatch.delenv("CLASSIFIER_AI_DAILY_BUDGET_CALLS", raising=False)
    monkeypatch.delenv("CLASSIFIER_AI_MAX_CALLS_PER_CONVERSATION_PER_DAY", raising=False)
