from datetime import datetime
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}


def reset_runtime() -> None:
    from agentduty.core.config import get_settings
    from agentduty.core.middleware import get_rate_limiter
    from agentduty.db.session import get_engine, get_session_factory
    from agentduty.workflows.registry import get_workflow_engine

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()
    get_workflow_engine.cache_clear()
    get_rate_limiter.cache_clear()


class FakeTransports:
    """Records what would have gone out over Slack and Twilio."""

    def __init__(self) -> None:
        self.slack_posts: list[dict] = []
        self.headers: list[dict] = []
        self.updates: list[dict] = []
        self.modals: list[dict] = []
        self.texts: list[dict] = []
        self.sms: list[dict] = []
        self.slack_error: Exception | None = None
        self.sms_error: Exception | None = None
        self._ts = 1700000000

    def next_ts(self) -> str:
        self._ts += 1
        return f"{self._ts}.000100"


@pytest.fixture()
def env(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test_agentduty.db'}")
    monkeypatch.setenv("APP_ENV", "development")
    monkeypatch.setenv("ADMIN_API_KEY", "test-admin-key")
    monkeypatch.setenv("ADMIN_API_KEYS", "")
    monkeypatch.setenv("SLACK_BOT_TOKEN", "xoxb-test")
    monkeypatch.setenv("SLACK_SIGNING_SECRET", "test-signing-secret")
    monkeypatch.setenv("SLACK_VALIDATE_SIGNATURES", "false")
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "ACtest")
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "test-token")
    monkeypatch.setenv("TWILIO_FROM_NUMBER", "+15550000000")
    monkeypatch.setenv("TWILIO_VALIDATE_SIGNATURES", "false")
    monkeypatch.setenv("WORKFLOW_INLINE_DISPATCH", "true")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    monkeypatch.setenv("REDIS_URL", "")
    reset_runtime()
    yield
    reset_runtime()


@pytest.fixture()
def transports(monkeypatch) -> FakeTransports:
    from agentduty.integrations.slack_client import SlackClient, SlackPostResult
    from agentduty.integrations.twilio_client import TwilioSMSClient

    fake = FakeTransports()

    def _send_notification(
        self,
        slack_user_id,
        notification_id,
        short_code,
        message,
        options=None,
        thread_ts=None,
        channel=None,
    ):  # noqa: ANN001
        if fake.slack_error is not None:
            raise fake.slack_error
        result = SlackPostResult(ts=fake.next_ts(), channel=channel or f"D-{slack_user_id}")
        fake.slack_posts.append(
            {
                "slack_user_id": slack_user_id,
                "notification_id": notification_id,
                "short_code": short_code,
                "message": message,
                "options": options,
                "thread_ts": thread_ts,
                "channel": result.channel,
                "ts": result.ts,
            }
        )
        return result

    def _post_session_header(self, slack_user_id, session_key, workspace=None):  # noqa: ANN001
        result = SlackPostResult(ts=fake.next_ts(), channel=f"D-{slack_user_id}")
        fake.headers.append({"session_key": session_key, "workspace": workspace, "ts": result.ts})
        return result

    def _update(self, channel, ts, short_code, message, selection):  # noqa: ANN001
        fake.updates.append({"channel": channel, "ts": ts, "short_code": short_code, "selection": selection})

    def _open_modal(self, trigger_id, view):  # noqa: ANN001
        fake.modals.append({"trigger_id": trigger_id, "view": view})

    def _post_text(self, channel, text):  # noqa: ANN001
        fake.texts.append({"channel": channel, "text": text})

    def _send_sms(self, to_number, body):  # noqa: ANN001
        if fake.sms_error is not None:
            raise fake.sms_error
        fake.sms.append({"to": to_number, "body": body})
        return f"SM{len(fake.sms):032d}"

    monkeypatch.setattr(SlackClient, "send_notification", _send_notification)
    monkeypatch.setattr(SlackClient, "post_session_header", _post_session_header)
    monkeypatch.setattr(SlackClient, "update_notification_message", _update)
    monkeypatch.setattr(SlackClient, "open_response_modal", _open_modal)
    monkeypatch.setattr(SlackClient, "post_text", _post_text)
    monkeypatch.setattr(TwilioSMSClient, "send", _send_sms)
    return fake


@pytest.fixture()
def db(env):
    from agentduty.db.init_db import init_db
    from agentduty.db.session import get_session_factory

    init_db()
    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(env, transports):
    from agentduty.main import create_app

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def make_user(db):
    from agentduty.db.models import User

    counter = {"n": 0}

    def _make(phone: str | None = None, slack_user_id: str | None = None, email: str | None = None):
        counter["n"] += 1
        user = User(
            email=email or f"dev{counter['n']}@example.com",
            name=f"Dev {counter['n']}",
            phone=phone,
            slack_user_id=slack_user_id,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture()
def make_notification(db):
    from agentduty.db.models import STATUS_DELIVERED, Notification

    def _make(
        user,
        short_code: str = "ABC",
        status: str = STATUS_DELIVERED,
        options: list[str] | None = None,
        created_at: datetime | None = None,
        session_id: str | None = None,
        message: str = "Tests are failing on main. What should I do?",
    ):
        notification = Notification(
            short_code=short_code,
            user_id=user.id,
            session_id=session_id,
            message=message,
            options=list(options or []),
            status=status,
        )
        if created_at is not None:
            notification.created_at = created_at
        db.add(notification)
        db.commit()
        db.refresh(notification)
        return notification

    return _make


@pytest.fixture()
def make_policy(db):
    from agentduty.db.models import EscalationPolicy, EscalationStep

    def _make(user, steps: list[tuple[str, int]], is_default: bool = True, name: str = "Escalate"):
        policy = EscalationPolicy(user_id=user.id, name=name, is_default=is_default)
        db.add(policy)
        db.flush()
        for order, (channel, delay_seconds) in enumerate(steps):
            db.add(
                EscalationStep(policy_id=policy.id, step_order=order, channel=channel, delay_seconds=delay_seconds)
            )
        db.commit()
        db.refresh(policy)
        return policy

    return _make


@pytest.fixture()
def agent(client):
    """A user created through the admin API plus headers carrying its API key."""

    def _make(phone: str | None = None, slack_user_id: str | None = None, email: str = "agent-owner@example.com"):
        user = client.post(
            "/v1/admin/users",
            headers=ADMIN_HEADERS,
            json={"email": email, "phone": phone, "slack_user_id": slack_user_id},
        ).json()
        key = client.post(f"/v1/admin/users/{user['id']}/api-keys", headers=ADMIN_HEADERS, json={"name": "cli"}).json()
        return user, {"X-Api-Key": key["key"]}

    return _make
