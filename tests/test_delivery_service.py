from sqlalchemy import select
from slack_sdk.errors import SlackApiError

from agentduty.db.models import (
    CHANNEL_SLACK,
    CHANNEL_SMS,
    DELIVERY_FAILED,
    DELIVERY_SENT,
    STATUS_DELIVERED,
    STATUS_PENDING,
    STATUS_RESPONDED,
    AgentSession,
    Delivery,
)
from agentduty.integrations.twilio_client import SMSNotConfiguredError, compose_sms_body
from agentduty.services.delivery_service import DeliveryService


def _deliveries(db, notification_id):
    db.expire_all()
    return db.scalars(select(Delivery).where(Delivery.notification_id == notification_id)).all()


def test_phone_only_user_gets_one_sms(db, transports, make_user, make_notification):
    user = make_user(phone="+15551230001")
    notification = make_notification(user, status=STATUS_PENDING, options=["Revert", "Fix", "Skip"])

    channels = DeliveryService(db).deliver(notification.id)

    assert channels == [CHANNEL_SMS]
    assert len(transports.sms) == 1
    assert transports.sms[0]["to"] == "+15551230001"
    assert "Reply with:\n1. Revert\n2. Fix\n3. Skip" in transports.sms[0]["body"]
    assert transports.slack_posts == []
    rows = _deliveries(db, notification.id)
    assert [(row.channel, row.status) for row in rows] == [(CHANNEL_SMS, DELIVERY_SENT)]
    assert notification.status == STATUS_DELIVERED


def test_linked_user_with_phone_gets_both_channels(db, transports, make_user, make_notification):
    user = make_user(phone="+15551230001", slack_user_id="U100")
    notification = make_notification(user, status=STATUS_PENDING)

    channels = DeliveryService(db).deliver(notification.id)

    assert channels == [CHANNEL_SLACK, CHANNEL_SMS]
    slack_row = next(row for row in _deliveries(db, notification.id) if row.channel == CHANNEL_SLACK)
    assert slack_row.external_id == transports.slack_posts[0]["ts"]
    assert slack_row.metadata_json["channel"] == "D-U100"


def test_session_thread_is_created_once_and_reused(db, transports, make_user, make_notification):
    user = make_user(slack_user_id="U100")
    session = AgentSession(user_id=user.id, session_key="run-42", workspace="~/src/app")
    db.add(session)
    db.commit()
    first = make_notification(user, short_code="AAA", status=STATUS_PENDING, session_id=session.id)
    second = make_notification(user, short_code="BBB", status=STATUS_PENDING, session_id=session.id)
    service = DeliveryService(db)

    service.deliver(first.id)
    service.deliver(second.id)

    assert len(transports.headers) == 1
    header_ts = transports.headers[0]["ts"]
    db.refresh(session)
    assert session.slack_thread_ts == header_ts
    assert session.slack_channel_id == "D-U100"
    assert [post["thread_ts"] for post in transports.slack_posts] == [header_ts, header_ts]


def test_slack_failure_is_recorded_and_sms_still_sent(db, transports, make_user, make_notification):
    transports.slack_error = SlackApiError("channel_not_found", {"ok": False, "error": "channel_not_found"})
    user = make_user(phone="+15551230001", slack_user_id="U100")
    notification = make_notification(user, status=STATUS_PENDING)

    channels = DeliveryService(db).deliver(notification.id)

    assert channels == [CHANNEL_SMS]
    rows = {row.channel: row for row in _deliveries(db, notification.id)}
    assert rows[CHANNEL_SLACK].status == DELIVERY_FAILED
    assert "channel_not_found" in rows[CHANNEL_SLACK].error
    assert rows[CHANNEL_SMS].status == DELIVERY_SENT


def test_sms_misconfiguration_is_swallowed(db, transports, make_user, make_notification):
    transports.sms_error = SMSNotConfiguredError("no credentials")
    user = make_user(phone="+15551230001")
    notification = make_notification(user, status=STATUS_PENDING)

    channels = DeliveryService(db).deliver(notification.id)

    assert channels == []
    assert _deliveries(db, notification.id) == []
    assert notification.status == STATUS_PENDING


def test_missing_notification_is_a_no_op(db, transports):
    assert DeliveryService(db).deliver("00000000-0000-0000-0000-000000000000") == []


def test_mark_delivered_never_reopens_answered_notification(db, make_user, make_notification):
    user = make_user()
    notification = make_notification(user, status=STATUS_RESPONDED)

    DeliveryService(db).mark_delivered(notification, step_index=2)

    assert notification.status == STATUS_RESPONDED
    assert notification.current_escalation_step == 2


def test_compose_sms_body_without_options():
    assert compose_sms_body("ABC", "Deploy?") == '[ABC] Deploy?\n\nReply "ABC <your response>"'
