"""
Admin endpoints: auth gating, plan mutations, kill switches, audit log, donations.
"""
import pytest

from quotagate.features.plans.service import get_plan_record
from quotagate.models.plan import PlanStatus, Tier


@pytest.fixture
def student(make_user):
    return make_user("student_1", display_name="Student")


@pytest.mark.parametrize(
    "method, path",
    [
        ("post", "/v1/admin/plans/set"),
        ("post", "/v1/admin/plans"),
        ("get", "/v1/admin/settings/kill-switches"),
        ("get", "/v1/admin/audit-log"),
        ("get", "/v1/admin/donations"),
    ],
)
def test_admin_endpoints_require_identity(client, method, path):
    response = getattr(client, method)(path)
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "admin_unauthorized"


def test_non_admin_is_forbidden_and_nothing_written(client, student, auth_headers):
    response = client.post(
        "/v1/admin/plans/set",
        json={"user_id": student, "tier": "pro"},
        headers=auth_headers(student, role="user"),
    )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "forbidden"
    assert get_plan_record(student) is None


def test_profile_role_used_when_token_has_no_role(client, student, make_user, auth_headers):
    make_user("staff_1", role="admin")
    response = client.post(
        "/v1/admin/plans/set",
        json={"user_id": student, "tier": "supporter"},
        headers=auth_headers("staff_1"),
    )
    assert response.status_code == 200
    assert get_plan_record(student).updated_by == "staff_1"


def test_profile_role_used_when_token_role_is_not_admin(client, student, make_user, auth_headers):
    make_user("staff_2", role="admin")
    response = client.post(
        "/v1/admin/plans/set",
        json={"user_id": student, "tier": "pro"},
        headers=auth_headers("staff_2", role="user"),
    )
    assert response.status_code == 200
    assert get_plan_record(student).updated_by == "staff_2"


def test_header_identity_cannot_claim_admin(client, student, test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "AUTH_ALLOW_USER_HEADER", True)
    response = client.post(
        "/v1/admin/plans/set",
        json={"user_id": student, "tier": "pro"},
        headers={"X-User-Id": "never_registered", "X-User-Role": "admin"},
    )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "forbidden"
    assert get_plan_record(student) is None


def test_header_identity_with_admin_profile_is_admin(client, student, make_user, test_settings, monkeypatch):
    make_user("staff_3", role="admin")
    monkeypatch.setattr(test_settings, "AUTH_ALLOW_USER_HEADER", True)
    response = client.post(
        "/v1/admin/plans/set",
        json={"user_id": student, "tier": "supporter"},
        headers={"X-User-Id": "staff_3"},
    )
    assert response.status_code == 200
    assert get_plan_record(student).updated_by == "staff_3"


def test_set_plan_endpoint_accepts_camel_case(client, student, admin_headers):
    response = client.post(
        "/v1/admin/plans/set",
        json={"targetUid": student, "tier": "pro", "expiresAt": "2099-01-01T00:00:00Z", "reason": "Scholarship"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["plan"]["tier"] == "pro"
    assert body["plan"]["expires_at"].startswith("2099-01-01")


def test_set_plan_rejects_invalid_tier(client, student, admin_headers):
    response = client.post(
        "/v1/admin/plans/set",
        json={"user_id": student, "tier": "gold"},
        headers=admin_headers,
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_tier"


def test_set_plan_rejects_unknown_user(client, admin_headers):
    response = client.post("/v1/admin/plans/set", json={"user_id": "nobody", "tier": "pro"}, headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_target"


def test_set_plan_requires_target(client, admin_headers):
    response = client.post("/v1/admin/plans/set", json={"tier": "pro"}, headers=admin_headers)
    assert response.status_code == 400


def test_dispatch_endpoint(client, student, admin_headers):
    granted = client.post(
        "/v1/admin/plans",
        json={"action": "setPlan", "targetUid": student, "tier": "supporter"},
        headers=admin_headers,
    )
    assert granted.status_code == 200

    overrides = client.post(
        "/v1/admin/plans",
        json={"action": "setAIOverrides", "targetUid": student, "bonusTokens": 5, "quotaOverride": None},
        headers=admin_headers,
    )
    assert overrides.status_code == 200
    assert overrides.json()["plan"]["bonus_tokens"] == 5

    revoked = client.post(
        "/v1/admin/plans",
        json={"action": "revokePlan", "targetUid": student},
        headers=admin_headers,
    )
    assert revoked.status_code == 200
    record = get_plan_record(student)
    assert (record.tier, record.status) == (Tier.FREE, PlanStatus.REVOKED)
    assert record.bonus_tokens == 5


def test_dispatch_rejects_unknown_action(client, student, admin_headers):
    response = client.post("/v1/admin/plans", json={"action": "deletePlan", "targetUid": student}, headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_action"


def test_overrides_endpoint_requires_a_field(client, student, admin_headers):
    response = client.post("/v1/admin/plans/ai-overrides", json={"user_id": student}, headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_override"


def test_get_plan_and_history(client, student, admin_headers):
    client.post("/v1/admin/plans/set", json={"user_id": student, "tier": "pro"}, headers=admin_headers)

    plan = client.get(f"/v1/admin/plans/{student}", headers=admin_headers).json()
    assert plan["has_record"] is True
    assert plan["effective_tier"] == "pro"
    assert plan["today"]["limit"] == 120

    history = client.get(f"/v1/admin/plans/{student}/history", headers=admin_headers).json()["history"]
    assert len(history) == 1
    assert history[0]["new_tier"] == "pro"

    assert client.get("/v1/admin/plans/nobody", headers=admin_headers).status_code == 404


def test_kill_switch_round_trip(client, admin_headers):
    current = client.get("/v1/admin/settings/kill-switches", headers=admin_headers).json()
    assert current["ai_enabled"] is True
    assert current["version"] == 0

    updated = client.put(
        "/v1/admin/settings/kill-switches",
        json={
            "ai_enabled": False,
            "paid_features_enabled": True,
            "monetization_visible": True,
            "ai_quotas": {"free": 0, "supporter": 25, "pro": 150},
        },
        headers=admin_headers,
    )
    assert updated.status_code == 200
    assert updated.json()["version"] == 1
    assert updated.json()["ai_quotas"]["pro"] == 150


def test_kill_switch_update_is_a_full_replace(client, admin_headers):
    response = client.put("/v1/admin/settings/kill-switches", json={"ai_enabled": False}, headers=admin_headers)
    assert response.status_code == 400


def test_audit_log_lists_and_pages(client, student, admin_headers):
    for tier in ("supporter", "pro", "supporter"):
        client.post("/v1/admin/plans/set", json={"user_id": student, "tier": tier}, headers=admin_headers)

    first_page = client.get("/v1/admin/audit-log?limit=2", headers=admin_headers).json()
    assert len(first_page["entries"]) == 2
    assert first_page["has_more"] is True
    assert first_page["entries"][0]["action"] == "monetization.plan_set"

    rest = client.get("/v1/admin/audit-log?limit=2&offset=2", headers=admin_headers).json()
    assert len(rest["entries"]) == 1
    assert rest["has_more"] is False


def test_donation_review_flow(client, student, admin_headers, auth_headers):
    submitted = client.post(
        "/v1/donations",
        json={"requestedPlan": "pro", "note": "Sent via PayPal"},
        headers=auth_headers(student),
    )
    assert submitted.status_code == 201
    request_id = submitted.json()["request"]["id"]

    pending = client.get("/v1/admin/donations?status=pending", headers=admin_headers).json()["requests"]
    assert [r["id"] for r in pending] == [request_id]

    approved = client.post(f"/v1/admin/donations/{request_id}/approve", headers=admin_headers)
    assert approved.status_code == 200
    assert approved.json()["request"]["status"] == "approved"
    assert get_plan_record(student).tier == Tier.PRO

    again = client.post(f"/v1/admin/donations/{request_id}/approve", headers=admin_headers)
    assert again.status_code == 409

    mine = client.get("/v1/donations/mine", headers=auth_headers(student)).json()["requests"]
    assert mine[0]["status"] == "approved"


def test_donation_reject_requires_feedback(client, student, admin_headers, auth_headers):
    request_id = client.post(
        "/v1/donations", json={"requested_tier": "supporter"}, headers=auth_headers(student)
    ).json()["request"]["id"]

    missing = client.post(f"/v1/admin/donations/{request_id}/reject", json={}, headers=admin_headers)
    assert missing.status_code == 400

    rejected = client.post(
        f"/v1/admin/donations/{request_id}/reject",
        json={"adminFeedback": "Transfer not found"},
        headers=admin_headers,
    )
    assert rejected.status_code == 200
    assert rejected.json()["request"]["admin_feedback"] == "Transfer not found"
