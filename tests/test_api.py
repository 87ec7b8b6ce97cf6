"""Tests for the FastAPI chatbot endpoints."""

import json
from unittest.mock import patch

import pytest

TEST_PASSPHRASE = "test-passphrase"
TEST_JWT_SECRET = "test-jwt-secret"

ASK = "/api/chatbot/ask"
PASS = {"x-chatbot-passphrase": TEST_PASSPHRASE}


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _sse_frames(response):
    frames = []
    for chunk in response.text.split("\n\n"):
        if chunk.startswith("data: "):
            frames.append(json.loads(chunk[len("data: "):]))
    return frames


# ---------------------------------------------------------------------------
# Ask: JSON responses
# ---------------------------------------------------------------------------

class TestAsk:

    def test_get_question(self, api_client):
        response = api_client.get(ASK, params={"question": "Wat is erfpacht?"}, headers=PASS)
        assert response.status_code == 200
        data = response.json()
        assert data["answer"] == "Antwoord uit legislation."
        assert data["conversation_token"]
        assert len(data["sources"]) <= 10
        assert data["language"] == "nl"
        assert "error" not in data

    def test_post_json(self, api_client, fake_adapters):
        response = api_client.post(ASK, json={
            "question": "Qu'est-ce que l'emphytéose?",
            "language": "fr",
            "source": "jurisprudence",
        }, headers=PASS)
        assert response.status_code == 200
        assert response.json()["language"] == "fr"
        assert fake_adapters["jurisprudence"].calls[0]["language"] == "fr"

    def test_post_form(self, api_client):
        response = api_client.post(ASK, data={"question": "Wat is erfpacht?", "source": "all"}, headers=PASS)
        assert response.status_code == 200
        assert len(response.json()["sources"]) == 6

    def test_sources_array_query(self, api_client, fake_adapters):
        response = api_client.get(
            f"{ASK}?question=Huur&sources[]=parliamentary&sources[]=legislation",
            headers=PASS,
        )
        assert response.status_code == 200
        assert len(fake_adapters["legislation"].calls) == 1
        assert len(fake_adapters["parliamentary"].calls) == 1
        assert fake_adapters["jurisprudence"].calls == []

    def test_empty_question_rejected_before_dispatch(self, api_client, fake_adapters, memory_store):
        response = api_client.get(ASK, params={"question": "  "}, headers=PASS)
        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "Vraag is verplicht"
        assert "conversation_token" not in data
        assert all(a.calls == [] for a in fake_adapters.values())
        assert memory_store._conversations == {}

    def test_unknown_source_rejected(self, api_client):
        response = api_client.get(ASK, params={"question": "Huur", "source": "doctrine"}, headers=PASS)
        assert response.status_code == 400

    def test_invalid_json_body(self, api_client):
        response = api_client.post(
            ASK, content=b"{not json", headers={**PASS, "content-type": "application/json"},
        )
        assert response.status_code == 400

    def test_repeated_question_uses_last_value(self, api_client, fake_adapters):
        response = api_client.get(f"{ASK}?question=Eerste&question=Tweede", headers=PASS)
        assert response.status_code == 200
        assert fake_adapters["legislation"].calls[0]["question"] == "Tweede"

    def test_single_source_failure_is_503_with_token(self, api_client, fake_adapters):
        fake_adapters["legislation"].failure = "Timeout"
        response = api_client.get(ASK, params={"question": "Wat is erfpacht?"}, headers=PASS)
        assert response.status_code == 503
        data = response.json()
        assert data["error"] == "legislation (Timeout)"
        assert data["conversation_token"]

    def test_partial_failure_is_200(self, api_client, fake_adapters):
        fake_adapters["parliamentary"].failure = "BackendUnavailable"
        response = api_client.get(ASK, params={"question": "Huur", "source": "all"}, headers=PASS)
        assert response.status_code == 200
        assert response.json()["failed_sources"] == ["parliamentary"]

    def test_conversation_continues(self, api_client, memory_store):
        first = api_client.get(ASK, params={"question": "Wat is de opzegtermijn?"}, headers=PASS).json()
        second = api_client.get(ASK, params={
            "question": "En in Brussel?",
            "conversation_token": first["conversation_token"],
        }, headers=PASS).json()
        assert second["conversation_token"] == first["conversation_token"]
        stored = memory_store.get_conversation(first["conversation_token"])
        assert [m["role"] for m in stored["messages"]] == ["user", "assistant", "user", "assistant"]

    def test_internal_error_is_500(self, api_client):
        from execution.legal_chatbot import api
        orchestrator = api._container.get_orchestrator()
        with patch.object(orchestrator.conversations, "resolve", side_effect=RuntimeError("db down")):
            response = api_client.get(ASK, params={"question": "Wat is erfpacht?"}, headers=PASS)
        assert response.status_code == 500
        assert response.json()["error"] == "Internal server error"
        assert response.json()["conversation_token"] is None

    def test_unexpected_routing_fault_is_500(self, api_client):
        with patch("execution.legal_chatbot.api.route", side_effect=RuntimeError("boom")):
            response = api_client.get(ASK, params={"question": "Wat is erfpacht?"}, headers=PASS)
        assert response.status_code == 500
        assert response.json()["error"] == "Internal server error"


# ---------------------------------------------------------------------------
# Ask: access control
# ---------------------------------------------------------------------------

class TestAskAccess:

    def test_anonymous_is_401(self, api_client, fake_adapters):
        response = api_client.get(ASK, params={"question": "Wat is erfpacht?"})
        assert response.status_code == 401
        assert response.json()["reason"] == "AuthenticationRequired"
        assert fake_adapters["legislation"].calls == []

    def test_logged_in_without_entitlement_is_402(self, api_client, user_token):
        response = api_client.get(ASK, params={"question": "Wat is erfpacht?"}, headers=_bearer(user_token))
        assert response.status_code == 402
        assert response.json()["error"] == "Chatbot access requires active subscription"

    def test_entitled_user(self, api_client, user_token, memory_store):
        memory_store.grant_entitlement("user-1", "chatbot")
        response = api_client.get(ASK, params={"question": "Wat is erfpacht?"}, headers=_bearer(user_token))
        assert response.status_code == 200
        stored = memory_store.get_conversation(response.json()["conversation_token"])
        assert stored["user_id"] == "user-1"

    def test_passphrase_query_param(self, api_client):
        response = api_client.get(ASK, params={"question": "Wat is erfpacht?", "pass": TEST_PASSPHRASE})
        assert response.status_code == 200

    def test_wrong_passphrase(self, api_client):
        response = api_client.get(
            ASK, params={"question": "Wat is erfpacht?"}, headers={"x-chatbot-passphrase": "nope"},
        )
        assert response.status_code == 401

    def test_access_checked_before_validation(self, api_client):
        response = api_client.get(ASK, params={"question": ""})
        assert response.status_code == 401

    def test_malformed_body_from_anonymous_is_401(self, api_client):
        response = api_client.post(ASK, content=b"{not json", headers={"content-type": "application/json"})
        assert response.status_code == 401
        assert response.json()["reason"] == "AuthenticationRequired"

    def test_repeated_wrong_passphrase_is_401(self, api_client):
        response = api_client.get(f"{ASK}?question=Wat%20is%20erfpacht&pass=a&pass=b")
        assert response.status_code == 401
        assert response.json()["reason"] == "AuthenticationRequired"

    def test_non_string_passphrase_is_401(self, api_client):
        response = api_client.post(ASK, json={"question": "Wat is erfpacht?", "pass": 123})
        assert response.status_code == 401
        assert response.json()["reason"] == "AuthenticationRequired"

    def test_list_passphrase_uses_first_string(self, api_client):
        response = api_client.post(ASK, json={"question": "Wat is erfpacht?", "pass": [1, TEST_PASSPHRASE]})
        assert response.status_code == 200


# ---------------------------------------------------------------------------
# Ask: streaming
# ---------------------------------------------------------------------------

class TestAskStream:

    def test_stream_headers_and_frames(self, api_client):
        response = api_client.get(ASK, params={"question": "Wat is erfpacht?", "stream": "true"}, headers=PASS)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["x-accel-buffering"] == "no"

        frames = _sse_frames(response)
        assert frames[0] == {"type": "progress", "percent": 5, "message": "Vraag ontvangen"}
        assert [f["type"] for f in frames].count("result") == 1
        assert frames[-1]["type"] == "result"
        assert frames[-1]["data"]["conversation_token"]
        percents = [f["percent"] for f in frames if f["type"] == "progress"]
        assert percents == sorted(percents)

    def test_stream_backend_failure_in_result_frame(self, api_client, fake_adapters):
        fake_adapters["legislation"].failure = "BackendUnavailable"
        response = api_client.post(ASK, json={"question": "Wat is erfpacht?", "stream": True}, headers=PASS)
        assert response.status_code == 200
        result = _sse_frames(response)[-1]
        assert result["data"]["error"] == "legislation (BackendUnavailable)"

    def test_stream_validation_error_is_plain_json(self, api_client):
        response = api_client.get(ASK, params={"question": "", "stream": "true"}, headers=PASS)
        assert response.status_code == 400
        assert response.headers["content-type"].startswith("application/json")


# ---------------------------------------------------------------------------
# Health & metrics
# ---------------------------------------------------------------------------

class TestHealthAndMetrics:

    def test_health(self, api_client):
        response = api_client.get("/api/chatbot/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["database"] == "memory"
        assert data["corpus_size"] == 300
        assert data["sources"] == ["jurisprudence", "legislation", "parliamentary"]

    def test_metrics_requires_access(self, api_client):
        assert api_client.get("/api/chatbot/metrics").status_code == 401

    def test_metrics_after_question(self, api_client):
        api_client.get(ASK, params={"question": "Wat is erfpacht?"}, headers=PASS)
        response = api_client.get("/api/chatbot/metrics", headers=PASS)
        assert response.status_code == 200
        data = response.json()
        assert data["queries"]["total"] == 1
        assert data["plans"] == {"legislation": 1}

    def test_rate_limit(self, chatbot_config, memory_store, registry):
        from dataclasses import replace
        from fastapi.testclient import TestClient
        from execution.legal_chatbot import api

        api._container.configure(config=replace(chatbot_config, rate_limit_rpm=2), store=memory_store, registry=registry)
        client = TestClient(api.app)
        statuses = [
            client.get(ASK, params={"question": "Wat is erfpacht?"}, headers=PASS).status_code
            for _ in range(3)
        ]
        assert statuses == [200, 200, 429]


# ---------------------------------------------------------------------------
# Feedback & saved answers
# ---------------------------------------------------------------------------

FEEDBACK = {
    "question": "Wat is erfpacht?",
    "answer": "Een zakelijk recht.",
    "feedback_type": "negative",
    "language": "nl",
}


class TestFeedbackEndpoints:

    def test_feedback(self, api_client, memory_store):
        response = api_client.post("/api/chatbot/feedback", json=FEEDBACK, headers=PASS)
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert memory_store._feedback[0]["feedback_type"] == "negative"
        assert memory_store._feedback[0]["ip_hash"]

    def test_feedback_invalid(self, api_client):
        response = api_client.post("/api/chatbot/feedback", json={"question": "q"}, headers=PASS)
        assert response.status_code == 422
        assert "Answer can't be blank" in response.json()["errors"]

    def test_feedback_requires_access(self, api_client):
        assert api_client.post("/api/chatbot/feedback", json=FEEDBACK).status_code == 401


class TestSavedAnswerEndpoints:

    def test_requires_login(self, api_client):
        response = api_client.get("/api/chatbot/saved", headers=PASS)
        assert response.status_code == 401
        assert response.json()["detail"] == "Login required"

    def test_save_list_delete(self, api_client, user_token):
        headers = _bearer(user_token)
        saved = api_client.post("/api/chatbot/save", json={
            "question": "Wat is erfpacht?",
            "answer": "Een zakelijk recht.",
            "sources": [{"identifier": "NUMAC1"}],
            "category": "vastgoed",
        }, headers=headers)
        assert saved.status_code == 200
        answer_id = saved.json()["id"]

        listing = api_client.get("/api/chatbot/saved", params={"category": "vastgoed"}, headers=headers).json()
        assert [a["id"] for a in listing["answers"]] == [answer_id]
        assert listing["categories"] == ["vastgoed"]

        assert api_client.delete(f"/api/chatbot/saved/{answer_id}", headers=headers).status_code == 200
        assert api_client.delete(f"/api/chatbot/saved/{answer_id}", headers=headers).status_code == 404

    def test_save_invalid(self, api_client, user_token):
        response = api_client.post("/api/chatbot/save", json={"answer": "a"}, headers=_bearer(user_token))
        assert response.status_code == 422

    def test_other_users_answer_not_found(self, api_client, user_token):
        from execution.legal_chatbot.access import create_session_jwt

        saved = api_client.post(
            "/api/chatbot/save", json={"question": "q", "answer": "a"}, headers=_bearer(user_token),
        ).json()
        other = create_session_jwt("user-2", secret=TEST_JWT_SECRET, expiry_hours=1)
        response = api_client.delete(f"/api/chatbot/saved/{saved['id']}", headers=_bearer(other))
        assert response.status_code == 404
