from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastapi.testclient import TestClient

from inbox_triage.database import get_db
from inbox_triage.main import app


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def fresh_db(db_session):
    db_session.query.return_value.filter.return_value.first.return_value = None
    db_session.query.return_value.filter.return_value.with_for_update.return_value.one.side_effect = [
        Mock(calls=0),
        Mock(calls=0),
    ]

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    yield db_session
    app.dependency_overrides.clear()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestInboxStateEndpoint:
    def test_unreplied_conversation(self, client):
        response = client.post(
            "/inbox/state",
            json={
                "now": "2024-06-12T12:00:00Z",
                "counts": {"message_count": 4, "inbound_count": 2, "outbound_count": 2, "inbound_count_non_final": 1},
                "timing": {
                    "last_non_final_message_at": "2024-06-11T09:00:00Z",
                    "last_non_final_direction": "inbound",
                    "days_since_last_inbound": 1.1,
                },
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "PRODUCTIVE"
        assert data["confidence"] == "MEDIUM"
        assert data["reasons"] == ["UNREPLIED", "SLA_BREACH"]
        assert data["followupSuggestion"] == "Reply recommended"
        assert data["needsFollowup"] is True

    def test_stale_conversation(self, client):
        response = client.post(
            "/inbox/state",
            json={
                "now": "2024-06-12T12:00:00Z",
                "counts": {"message_count": 2, "inbound_count": 1, "outbound_count": 1},
                "timing": {"days_since_last_inbound": 12},
                "thresholds": {"inactive_timeout_days": 10},
            },
        )
        data = response.json()
        assert data["state"] == "LOST"
        assert data["reasons"] == ["INBOUND_STALE", {"code": "LOST_INACTIVE_TIMEOUT", "confidence": "HIGH"}]
        assert data["followupDueAt"] is None

    def test_rejects_bad_direction(self, client):
        response = client.post("/inbox/state", json={"timing": {"last_non_final_direction": "sideways"}})
        assert response.status_code == 422


class TestAiGateEndpoint:
    def test_gate_with_explicit_mode(self, client):
        response = client.post(
            "/ai/gate",
            json={"message_text": "call me next month", "extracted_features": {"has_phone_number": True}, "mode": "mock"},
        )
        assert response.status_code == 200
        assert response.json() == {"run": True, "reason": "eligible", "needs_handoff": False, "needs_deferred": True}

    def test_gate_defaults_to_configured_mode(self, client, monkeypatch):
        monkeypatch.setenv("CLASSIFIER_AI_MODE", "off")
        response = client.post("/ai/gate", json={"message_text": "call me"})
        assert response.json()["reason"] == "ai_disabled"


class TestAiAttemptEndpoint:
    def test_mock_attempt(self, client, fresh_db, mock_env):
        response = client.post(
            "/ai/attempt",
            json={
                "conversation_id": "conv-1",
                "message_text": "Text me after the holidays",
                "context_messages": [{"direction": "outbound", "text": "Here is your quote"}],
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["mode"] == "mock"
        assert data["attempted"] is True
        assert data["attempt_outcome"] == "ok"
        assert data["interpretation"]["deferred"]["bucket"] == "AFTER_HOLIDAYS"
        assert data["interpretation"]["handoff"]["is_handoff"] is True
        assert fresh_db.execute.call_count == 2
        fresh_db.rollback.assert_called_once()
        fresh_db.commit.assert_called_once()

    def test_budget_exhausted(self, client, fresh_db, mock_env):
        fresh_db.query.return_value.filter.return_value.first.return_value = Mock(calls=1)
        response = client.post("/ai/attempt", json={"conversation_id": "conv-1", "message_text": "call me later"})
        data = response.json()
        assert data["attempted"] is False
        assert data["skipped_reason"] == "conversation_budget_exceeded"
        fresh_db.execute.assert_not_called()
        fresh_db.commit.assert_not_called()

    def test_off_mode(self, client, fresh_db, monkeypatch):
        monkeypatch.setenv("CLASSIFIER_AI_MODE", "off")
        response = client.post("/ai/attempt", json={"conversation_id": "conv-1", "message_text": "call me"})
        assert response.json()["skipped_reason"] == "ai_disabled"

    def test_live_attempt_commits_reservation_before_call(self, client, fresh_db, mock_env, monkeypatch):
        monkeypatch.setenv("CLASSIFIER_AI_MODE", "live")
        committed_before_call = []

        async def _run(model, payload, **kwargs):
            committed_before_call.append(fresh_db.commit.called)
            return {
                "handoff": {"is_handoff": True, "type": "phone", "confidence": "HIGH", "evidence": "call me"},
                "deferred": {
                    "is_deferred": False,
                    "bucket": None,
                    "due_date_iso": None,
                    "confidence": "LOW",
                    "evidence": "",
                },
            }

        provider = Mock()
        provider.run = AsyncMock(side_effect=_run)
        with patch("inbox_triage.routers.inbox._build_provider", return_value=provider):
            response = client.post("/ai/attempt", json={"conversation_id": "conv-1", "message_text": "call me"})

        data = response.json()
        assert data["attempted"] is True
        assert data["attempt_outcome"] == "ok"
        assert committed_before_call == [True]

    def test_live_attempt_loses_race_for_budget(self, client, fresh_db, mock_env, monkeypatch):
        monkeypatch.setenv("CLASSIFIER_AI_MODE", "live")
        # The snapshot sees no usage, but another attempt counted the call before the lock was taken.
        fresh_db.query.return_value.filter.return_value.with_for_update.return_value.one.side_effect = [
            Mock(calls=3),
            Mock(calls=1),
        ]
        provider = Mock()
        provider.run = AsyncMock()
        with patch("inbox_triage.routers.inbox._build_provider", return_value=provider):
            response = client.post("/ai/attempt", json={"conversation_id": "conv-1", "message_text": "call me"})

        data = response.json()
        assert data["attempted"] is False
        assert data["skipped_reason"] == "conversation_budget_exceeded"
        assert data["interpretation"] is None
        provider.run.assert_not_called()
        fresh_db.commit.assert_called_once()
