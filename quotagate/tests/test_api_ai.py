"""
AI chat endpoint: limiter, validation, entitlement and downstream call.
"""
import json

import httpx
import pytest

from quotagate.features.ai.service import set_transport_for_tests
from quotagate.features.kill_switches.service import update_kill_switches
from quotagate.features.plans.service import set_ai_overrides, set_plan
from quotagate.features.users.service import get_user
from quotagate.models.kill_switch import KillSwitchSet


@pytest.fixture
def pro_student(make_user, admin_actor):
    user_id = make_user("pro_student")
    set_plan(user_id, "pro", actor=admin_actor)
    return user_id


def _chat(client, headers, message="How do I reverse a list?", **extra):
    return client.post("/v1/ai/chat", json={"message": message, **extra}, headers=headers)


def test_chat_returns_reply_and_remaining(client, pro_student, auth_headers, ai_replies):
    response = _chat(client, auth_headers(pro_student), context={"lesson": "lists"})

    assert response.status_code == 200
    body = response.json()
    assert body["reply"] == "Here is a hint."
    assert body["remaining"] == 119
    assert body["limit"] == 120
    assert body["plan"] == "pro"
    assert len(body["date_key"]) == 8

    sent = json.loads(ai_replies[0].content)
    assert sent["message"] == "How do I reverse a list?"
    assert sent["context"] == {"lesson": "lists"}
    assert sent["user"] == pro_student


def test_new_user_without_plan_has_no_ai_access(client, auth_headers, ai_replies):
    response = _chat(client, auth_headers("brand_new"))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "NO_AI_ACCESS"
    assert ai_replies == []


def test_requires_authentication(client):
    response = _chat(client, {})
    assert response.status_code == 401


def test_quota_exceeded_is_429(client, make_user, admin_actor, auth_headers, ai_replies):
    user_id = make_user("tiny_quota")
    set_ai_overrides(user_id, actor=admin_actor, quota_override=1)
    headers = auth_headers(user_id)

    assert _chat(client, headers).status_code == 200
    denied = _chat(client, headers)
    assert denied.status_code == 429
    error = denied.json()["error"]
    assert error["code"] == "QUOTA_EXCEEDED"
    assert error["remaining"] == 0
    assert len(ai_replies) == 1


def test_kill_switch_is_403(client, pro_student, admin_actor, auth_headers, ai_replies):
    update_kill_switches(KillSwitchSet(ai_enabled=False), admin_actor)
    response = _chat(client, auth_headers(pro_student))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "AI_DISABLED"


def test_rate_limiter_runs_before_quota(client, pro_student, auth_headers, ai_replies, test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "AI_RATE_LIMIT_MAX", 2)
    headers = auth_headers(pro_student)

    assert _chat(client, headers).status_code == 200
    assert _chat(client, headers).status_code == 200
    limited = _chat(client, headers)
    assert limited.status_code == 429
    assert limited.json()["error"]["code"] == "RATE_LIMITED"

    plan = client.get("/v1/me/plan", headers=headers).json()
    assert plan["today"]["count"] == 2


def test_rate_limited_caller_is_not_written_to_store(client, auth_headers, monkeypatch):
    monkeypatch.setattr("quotagate.api.ai.allow_ai_request", lambda user_id: False)
    response = _chat(client, auth_headers("burst_user"))
    assert response.status_code == 429
    assert get_user("burst_user") is None


def test_input_too_long_consumes_nothing(client, pro_student, auth_headers, ai_replies, test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "AI_MAX_INPUT_CHARS", 10)
    headers = auth_headers(pro_student)

    response = _chat(client, headers, message="x" * 11)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "input_too_long"
    assert client.get("/v1/me/plan", headers=headers).json()["today"]["count"] == 0


def test_length_limit_applies_to_trimmed_message(client, pro_student, auth_headers, ai_replies, test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "AI_MAX_INPUT_CHARS", 10)

    response = _chat(client, auth_headers(pro_student), message="   short   \n")
    assert response.status_code == 200
    assert json.loads(ai_replies[0].content)["message"] == "short"


def test_blank_message_rejected(client, pro_student, auth_headers):
    assert _chat(client, auth_headers(pro_student), message="   ").status_code == 400


def test_unconfigured_ai_is_503(client, pro_student, auth_headers, test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "AI_API_URL", None)
    response = _chat(client, auth_headers(pro_student))
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "ai_unconfigured"


@pytest.mark.parametrize(
    "handler",
    [
        lambda request: httpx.Response(500, json={"error": "boom"}),
        lambda request: httpx.Response(200, text="not json"),
        lambda request: httpx.Response(200, json={"choices": []}),
    ],
)
def test_upstream_failure_is_502_and_quota_stays_consumed(client, pro_student, auth_headers, handler):
    set_transport_for_tests(httpx.MockTransport(handler))
    headers = auth_headers(pro_student)

    response = _chat(client, headers)
    assert response.status_code == 502
    assert response.json()["error"]["code"] == "ai_upstream_error"
    assert client.get("/v1/me/plan", headers=headers).json()["today"]["count"] == 1


def test_openai_style_reply_accepted(client, pro_student, auth_headers):
    set_transport_for_tests(
        httpx.MockTransport(
            lambda request: httpx.Response(200, json={"choices": [{"message": {"content": "Use reversed()."}}]})
        )
    )
    response = _chat(client, auth_headers(pro_student))
    assert response.json()["reply"] == "Use reversed()."
