import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from agentduty.core.clock import as_utc
from agentduty.db.models import (
    CHANNEL_SLACK,
    CHANNEL_SMS,
    DELIVERY_SENT,
    TERMINAL_STATUSES,
    Delivery,
    EscalationPolicy,
    EscalationStep,
    Notification,
    PriorityRoute,
    User,
)
from agentduty.services.delivery_service import DeliveryService

logger = logging.getLogger(__name__)


class EscalationService:
    """Policy resolution and the single-channel sends behind each escalation step."""

    def __init__(self, db: Session, delivery: DeliveryService | None = None) -> None:
        self.db = db
        self.delivery = delivery or DeliveryService(db)

    def resolve_policy_id(self, user_id: str, priority: int) -> str | None:
        route = self.db.scalar(
            select(PriorityRoute).where(PriorityRoute.user_id == user_id, PriorityRoute.priority == priority).limit(1)
        )
        if route is not None:
            return route.policy_id

        default_policy = self.db.scalar(
            select(EscalationPolicy)
            .where(EscalationPolicy.user_id == user_id, EscalationPolicy.is_default.is_(True))
            .order_by(EscalationPolicy.created_at.desc())
            .limit(1)
        )
        return default_policy.id if default_policy is not None else None

    def load_snapshot(self, notification_id: str) -> dict | None:
        notification = self.db.get(Notification, notification_id)
        if notification is None:
            return None
        return {"id": notification.id, "user_id": notification.user_id, "policy_id": notification.policy_id}

    def load_steps(self, policy_id: str) -> list[dict]:
        steps = self.db.scalars(
            select(EscalationStep).where(EscalationStep.policy_id == policy_id).order_by(EscalationStep.step_order)
        ).all()
        return [
            {"step_order": step.step_order, "channel": step.channel, "delay_seconds": step.delay_seconds}
            for step in steps
        ]

    def snoozed_until(self, notification_id: str, now: datetime) -> str | None:
        notification = self.db.get(Notification, notification_id)
        if notification is None:
            return None
        snoozed_until = as_utc(notification.snoozed_until)
        if snoozed_until is None or snoozed_until <= now:
            return None
        return snoozed_until.isoformat()

    def deliver_default(self, notification_id: str) -> str | None:
        notification, user = self._load(notification_id)
        if notification is None or user is None:
            return None
        if notification.status in TERMINAL_STATUSES:
            logger.info("Skipping default delivery for closed notification", extra={"notification_id": notification_id})
            return None

        # The first delivery already reached the user on some channel.
        delivered_on = self.db.scalar(
            select(Delivery.channel)
            .where(Delivery.notification_id == notification_id, Delivery.status == DELIVERY_SENT)
            .order_by(Delivery.created_at)
            .limit(1)
        )
        if delivered_on is not None:
            return delivered_on

        channel = None
        if user.slack_user_id:
            channel = CHANNEL_SLACK if self.delivery.send_slack(notification, user) is not None else None
        elif user.phone:
            channel = CHANNEL_SMS if self.delivery.send_sms(notification, user) is not None else None

        if channel is not None:
            self.delivery.mark_delivered(notification)
        return channel

    def deliver_step(self, notification_id: str, step_index: int, channel: str) -> str | None:
        notification, user = self._load(notification_id)
        if notification is None or user is None:
            return None
        if notification.status in TERMINAL_STATUSES:
            logger.info(
                "Skipping escalation step for closed notification",
                extra={"notification_id": notification_id, "step_index": step_index},
            )
            return None

        sent = None
        if channel == CHANNEL_SLACK and user.slack_user_id:
            sent = CHANNEL_SLACK if self.delivery.send_slack(notification, user) is not None else None
        elif channel == CHANNEL_SMS and user.phone:
            sent = CHANNEL_SMS if self.delivery.send_sms(notification, user) is not None else None
        else:
            logger.info(
                "No usable channel for escalation step",
                extra={"notification_id": notification_id, "step_index": step_index, "channel": channel},
            )

        self.delivery.mark_delivered(notification, step_index=step_index)
        return sent

    def _load(self, notification_id: str) -> tuple[Notification | None, User | None]:
        notification = self.db.get(Notification, notification_id)
        if notification is None:
            return None, None
        return notification, self.db.get(User, notification.user_id)
