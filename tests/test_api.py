from tests.conftest import ADMIN_HEADERS


def test_health(client):
    response = client.get("/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "app_env": "development"}


def test_root(client):
    root = client.get("/")
    assert root.status_code == 200
    assert root.json()["name"] == "AgentDuty API"


def test_admin_routes_require_key(client):
    response = client.post("/v1/admin/users", json={"email": "x@example.com"})
    assert response.status_code == 401


def test_duplicate_user_email_conflicts(client):
    first = client.post("/v1/admin/users", headers=ADMIN_HEADERS, json={"email": "x@example.com"})
    second = client.post("/v1/admin/users", headers=ADMIN_HEADERS, json={"email": "x@example.com"})
    assert first.status_code == 201
    assert second.status_code == 409


def test_notifications_require_api_key(client):
    assert client.get("/v1/notifications").status_code == 401
    assert client.get("/v1/notifications", headers={"X-Api-Key": "adk_wrong"}).status_code == 401


def test_create_and_fetch_notification(client, agent, transports):
    _, headers = agent(slack_user_id="U100")

    created = client.post(
        "/v1/notifications",
        headers=headers,
        json={
            "message": "Migration needs a manual step. Proceed?",
            "priority": 2,
            "options": ["Proceed", "Abort"],
            "tags": ["db"],
            "context": {"repo": "api"},
            "session_key": "run-1",
            "workspace": "~/src/api",
        },
    )
    assert created.status_code == 201
    body = created.json()
    assert body["status"] == "delivered"
    assert len(body["short_code"]) == 3
    assert body["options"] == ["Proceed", "Abort"]
    assert body["session_id"]
    assert transports.headers[0]["session_key"] == "run-1"

    by_code = client.get(f"/v1/notifications/{body['short_code'].lower()}", headers=headers)
    by_id = client.get(f"/v1/notifications/{body['id']}", headers=headers)
    assert by_code.json()["id"] == body["id"]
    assert by_id.json()["responses"] == []


def test_respond_archive_and_feeds(client, agent):
    _, headers = agent()
    first = client.post("/v1/notifications", headers=headers, json={"message": "First?"}).json()
    second = client.post("/v1/notifications", headers=headers, json={"message": "Second?"}).json()
    third = client.post("/v1/notifications", headers=headers, json={"message": "Third?"}).json()

    answered = client.post(f"/v1/notifications/{first['id']}/respond", headers=headers, json={"text": "done"})
    assert answered.status_code == 200
    assert answered.json()["status"] == "responded"
    assert answered.json()["responses"][0]["channel"] == "api"

    archived = client.post(f"/v1/notifications/{second['id']}/archive", headers=headers)
    assert archived.json()["status"] == "archived"

    active = client.get("/v1/notifications/active", headers=headers).json()
    assert [item["id"] for item in active] == [third["id"]]

    responded = client.get("/v1/notifications", headers=headers, params={"status": "responded"}).json()
    assert [item["id"] for item in responded] == [first["id"]]

    assert client.post("/v1/notifications/archive-all", headers=headers).json() == {"archived": 1}
    assert client.get("/v1/notifications/active", headers=headers).json() == []


def test_respond_requires_an_answer(client, agent):
    _, headers = agent()
    created = client.post("/v1/notifications", headers=headers, json={"message": "Ok?"}).json()

    response = client.post(f"/v1/notifications/{created['id']}/respond", headers=headers, json={})
    assert response.status_code == 422


def test_snooze_sets_snoozed_until(client, agent):
    _, headers = agent()
    created = client.post("/v1/notifications", headers=headers, json={"message": "Later?"}).json()

    snoozed = client.post(f"/v1/notifications/{created['id']}/snooze", headers=headers, json={"minutes": 15})

    assert snoozed.status_code == 200
    assert snoozed.json()["snoozed_until"] is not None
    assert snoozed.json()["status"] == created["status"]


def test_other_users_notifications_are_hidden(client, agent):
    _, owner_headers = agent(email="owner@example.com")
    _, other_headers = agent(email="other@example.com")
    created = client.post("/v1/notifications", headers=owner_headers, json={"message": "Mine"}).json()

    assert client.get(f"/v1/notifications/{created['id']}", headers=other_headers).status_code == 404
    assert client.post(f"/v1/notifications/{created['id']}/archive", headers=other_headers).status_code == 404


def test_escalation_policy_and_priority_route(client, agent):
    user, headers = agent(phone="+15551230001", slack_user_id="U100")

    policy = client.post(
        "/v1/admin/escalation-policies",
        headers=ADMIN_HEADERS,
        json={
            "user_id": user["id"],
            "name": "Urgent",
            "steps": [{"channel": "slack", "delay_seconds": 0}, {"channel": "sms", "delay_seconds": 120}],
        },
    )
    assert policy.status_code == 201
    route = client.post(
        "/v1/admin/priority-routes",
        headers=ADMIN_HEADERS,
        json={"user_id": user["id"], "priority": 1, "policy_id": policy.json()["id"]},
    )
    assert route.status_code == 201

    urgent = client.post("/v1/notifications", headers=headers, json={"message": "Prod down", "priority": 1}).json()
    normal = client.post("/v1/notifications", headers=headers, json={"message": "Lint nit", "priority": 3}).json()
    assert urgent["policy_id"] == policy.json()["id"]
    assert normal["policy_id"] is None

    invalid = client.post(
        "/v1/admin/escalation-policies",
        headers=ADMIN_HEADERS,
        json={"user_id": user["id"], "name": "Bad", "steps": [{"channel": "email", "delay_seconds": 0}]},
    )
    assert invalid.status_code == 422


def test_run_due_and_metrics(client, agent):
    _, headers = agent(phone="+15551230001")
    client.post("/v1/notifications", headers=headers, json={"message": "Counted"})

    run_due = client.post("/v1/admin/workflows/run-due", headers=ADMIN_HEADERS)
    assert run_due.status_code == 200
    assert run_due.json()["executed"] == 0

    metrics = client.get("/v1/metrics").json()
    assert metrics["notifications_total"] == 1
    assert metrics["notifications_by_status"] == {"delivered": 1}
    assert metrics["deliveries_total"] == 1
    assert metrics["responses_total"] == 0
    assert metrics["workflow_runs_sleeping"] == 0


def test_create_returns_503_when_short_codes_run_out(client, agent, monkeypatch):
    _, headers = agent()
    monkeypatch.setattr("agentduty.services.notification_service.generate_short_code", lambda: "ABC")
    assert client.post("/v1/notifications", headers=headers, json={"message": "First"}).status_code == 201

    response = client.post("/v1/notifications", headers=headers, json={"message": "Second"})

    assert response.status_code == 503


def test_slack_link_code_for_current_user(client, agent):
    _, headers = agent()

    response = client.post("/v1/me/slack-link-code", headers=headers)

    assert response.status_code == 200
    assert response.json()["code"].startswith("LINK-")
    assert response.json()["expires_at"]


def test_metrics_query_raises_no_sqlalchemy_deprecations(client, agent):
    import warnings

    from sqlalchemy.exc import SADeprecationWarning

    _, headers = agent()
    client.post("/v1/notifications", headers=headers, json={"message": "Counted"})

    with warnings.catch_warnings():
        warnings.simplefilter("error", SADeprecationWarning)
        response = client.get("/v1/metrics")

    assert response.status_code == 200
    assert response.json()["notifications_by_status"] == {"pending": 1}
