import logging

from sqlalchemy.orm import Session

from agentduty.core.clock import utc_now
from agentduty.db.models import (
    ACTIVE_STATUSES,
    CHANNEL_SLACK,
    CHANNEL_SMS,
    DELIVERY_FAILED,
    DELIVERY_SENT,
    STATUS_DELIVERED,
    AgentSession,
    Delivery,
    Notification,
    User,
)
from agentduty.integrations.slack_client import SlackClient
from agentduty.integrations.twilio_client import SMSNotConfiguredError, TwilioSMSClient, compose_sms_body

logger = logging.getLogger(__name__)


class DeliveryService:
    def __init__(
        self,
        db: Session,
        slack: SlackClient | None = None,
        sms: TwilioSMSClient | None = None,
    ) -> None:
        self.db = db
        self.slack = slack or SlackClient()
        self.sms = sms or TwilioSMSClient()

    def deliver(self, notification_id: str) -> list[str]:
        """First delivery: every channel the user has, Slack then SMS."""
        notification = self.db.get(Notification, notification_id)
        if notification is None:
            return []
        user = self.db.get(User, notification.user_id)
        if user is None:
            return []

        channels: list[str] = []
        if user.slack_user_id:
            delivery = self.send_slack(notification, user, start_thread=True)
            if delivery is not None:
                channels.append(CHANNEL_SLACK)

        if user.phone:
            delivery = self.send_sms(notification, user)
            if delivery is not None:
                channels.append(CHANNEL_SMS)

        if channels:
            self.mark_delivered(notification)
        logger.info("Notification delivered", extra={"notification_id": notification.id, "channels": channels})
        return channels

    def send_slack(self, notification: Notification, user: User, start_thread: bool = False) -> Delivery | None:
        thread_ts = None
        channel = None
        try:
            session = self.db.get(AgentSession, notification.session_id) if notification.session_id else None
            if session is not None:
                thread_ts, channel = self._session_thread(session, user, start_thread)
            result = self.slack.send_notification(
                slack_user_id=user.slack_user_id,
                notification_id=notification.id,
                short_code=notification.short_code,
                message=notification.message,
                options=notification.options or None,
                thread_ts=thread_ts,
                channel=channel,
            )
        except Exception as exc:  # noqa: BLE001
            self.db.rollback()
            logger.warning("Slack delivery failed for %s: %s", notification.id, exc)
            self.db.add(
                Delivery(
                    notification_id=notification.id,
                    channel=CHANNEL_SLACK,
                    status=DELIVERY_FAILED,
                    error=str(exc) or exc.__class__.__name__,
                )
            )
            self.db.commit()
            return None

        delivery = Delivery(
            notification_id=notification.id,
            channel=CHANNEL_SLACK,
            status=DELIVERY_SENT,
            external_id=result.ts,
            metadata_json={"channel": result.channel, "thread_ts": thread_ts},
        )
        self.db.add(delivery)
        self.db.commit()
        return delivery

    def send_sms(self, notification: Notification, user: User) -> Delivery | None:
        body = compose_sms_body(notification.short_code, notification.message, notification.options or None)
        try:
            sid = self.sms.send(user.phone, body)
        except SMSNotConfiguredError:
            logger.info("SMS not configured, skipping delivery", extra={"notification_id": notification.id})
            return None
        except Exception as exc:  # noqa: BLE001
            logger.warning("SMS delivery failed for %s: %s", notification.id, exc)
            return None

        delivery = Delivery(
            notification_id=notification.id,
            channel=CHANNEL_SMS,
            status=DELIVERY_SENT,
            external_id=sid,
        )
        self.db.add(delivery)
        self.db.commit()
        return delivery

    def mark_delivered(self, notification: Notification, step_index: int | None = None) -> None:
        # A reply that already landed keeps the notification responded.
        if notification.status in ACTIVE_STATUSES:
            notification.status = STATUS_DELIVERED
        if step_index is not None:
            notification.current_escalation_step = step_index
        notification.updated_at = utc_now()
        self.db.commit()

    def _session_thread(
        self,
        session: AgentSession,
        user: User,
        start_thread: bool,
    ) -> tuple[str | None, str | None]:
        if session.slack_thread_ts:
            return session.slack_thread_ts, session.slack_channel_id
        if not start_thread:
            return None, None

        header = self.slack.post_session_header(user.slack_user_id, session.session_key, session.workspace)
        session.slack_thread_ts = header.ts
        session.slack_channel_id = header.channel
        self.db.commit()
        logger.info("Slack session thread started", extra={"session_id": session.id, "thread_ts": header.ts})
        return header.ts, header.channel
