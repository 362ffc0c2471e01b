from sqlalchemy import select

from agentduty.db.models import CHANNEL_SMS, STATUS_RESPONDED, Response
from agentduty.services.response_recorder import ResponseRecorder
from agentduty.workflows.engine import WorkflowEngine


def test_recording_twice_keeps_history_and_status(db, make_user, make_notification):
    user = make_user(phone="+15551230001")
    notification = make_notification(user)
    recorder = ResponseRecorder(db)

    recorder.record(notification, user.id, CHANNEL_SMS, text="first")
    assert notification.status == STATUS_RESPONDED
    recorder.record(notification, user.id, CHANNEL_SMS, selected_option="Fix", external_id="SM1")

    db.expire_all()
    rows = db.scalars(select(Response).where(Response.notification_id == notification.id)).all()
    assert len(rows) == 2
    assert {row.text for row in rows} == {"first", None}
    assert notification.status == STATUS_RESPONDED


def test_cancellation_signal_failure_does_not_escape(db, make_user, make_notification, monkeypatch):
    def _broken_emit(self, event_name, data, now=None):  # noqa: ANN001
        raise RuntimeError("workflow store unavailable")

    monkeypatch.setattr(WorkflowEngine, "emit", _broken_emit)
    user = make_user()
    notification = make_notification(user)

    response = ResponseRecorder(db).record(notification, user.id, CHANNEL_SMS, text="done")

    assert response.id
    assert notification.status == STATUS_RESPONDED
