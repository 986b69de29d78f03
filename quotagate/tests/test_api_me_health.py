from quotagate.features.kill_switches.service import update_kill_switches
from quotagate.features.plans.service import set_plan
from quotagate.models.kill_switch import KillSwitchSet


def test_me_plan_for_new_user(client, auth_headers):
    response = client.get("/v1/me/plan", headers=auth_headers("newcomer", name="New Person"))
    assert response.status_code == 200
    body = response.json()
    assert body["effective_tier"] == "free"
    assert body["today"]["limit"] == 0
    assert body["monetization_visible"] is True


def test_me_plan_reflects_grant_and_switches(client, make_user, admin_actor, auth_headers):
    user_id = make_user("supporter_me")
    set_plan(user_id, "supporter", actor=admin_actor)
    update_kill_switches(KillSwitchSet(monetization_visible=False), admin_actor)

    body = client.get("/v1/me/plan", headers=auth_headers(user_id)).json()
    assert body["plan"]["tier"] == "supporter"
    assert body["today"]["remaining"] == 20
    assert body["monetization_visible"] is False


def test_me_plan_requires_auth(client):
    response = client.get("/v1/me/plan")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthorized"


def test_invalid_token_is_401(client):
    response = client.get("/v1/me/plan", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "invalid_token"


def test_request_id_round_trip(client):
    response = client.get("/healthz", headers={"X-Request-Id": "req-123"})
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["x-request-id"] == "req-123"


def test_readyz_reports_tables(client):
    response = client.get("/readyz")
    assert response.status_code == 200
    assert response.json()["db"] == {"connected": True, "missing_tables": []}


def test_unknown_route_uses_error_envelope(client):
    response = client.get("/v1/nowhere")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_metrics_export(client, make_user, auth_headers):
    client.get("/healthz")
    client.get("/v1/me/plan", headers=auth_headers("metrics_user"))
    text = client.get("/metrics").text
    assert "# TYPE http_requests_total counter" in text
    assert 'path="/healthz"' in text
