from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from agentduty.db.models import CHANNEL_SLACK, AgentSession, Delivery, Notification, User


@dataclass(frozen=True)
class ThreadMatch:
    notification: Notification
    user: User


class ThreadCorrelator:
    """Map a Slack thread reply back to the notification that started the thread."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def resolve_thread_reply(self, slack_user_id: str, thread_ts: str) -> ThreadMatch | None:
        user = self.db.scalar(select(User).where(User.slack_user_id == slack_user_id))
        if user is None:
            return None

        # Reply to the notification message itself.
        delivery = self.db.scalar(
            select(Delivery)
            .where(Delivery.external_id == thread_ts, Delivery.channel == CHANNEL_SLACK)
            .order_by(Delivery.created_at.desc())
            .limit(1)
        )
        if delivery is not None:
            notification = self.db.get(Notification, delivery.notification_id)
            if notification is not None:
                return ThreadMatch(notification=notification, user=user)

        # Reply anywhere in a session thread whose root is the session header.
        session = self.db.scalar(select(AgentSession).where(AgentSession.slack_thread_ts == thread_ts).limit(1))
        if session is not None:
            notification = self.db.scalar(
                select(Notification)
                .where(Notification.session_id == session.id, Notification.user_id == user.id)
                .order_by(Notification.created_at.desc())
                .limit(1)
            )
            if notification is not None:
                return ThreadMatch(notification=notification, user=user)

        return None
