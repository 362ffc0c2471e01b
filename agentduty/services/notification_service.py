import logging
import secrets
import uuid
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from agentduty.core.clock import utc_now
from agentduty.core.config import get_settings
from agentduty.db.models import (
    ACTIVE_STATUSES,
    CHANNEL_API,
    STATUS_ARCHIVED,
    STATUS_PENDING,
    AgentSession,
    Notification,
    Response,
    User,
)
from agentduty.services.delivery_service import DeliveryService
from agentduty.services.escalation_service import EscalationService
from agentduty.services.response_recorder import ResponseRecorder
from agentduty.workflows.events import NOTIFICATION_CREATED, NOTIFICATION_ID_FIELD
from agentduty.workflows.registry import get_workflow_engine

logger = logging.getLogger(__name__)

SHORT_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
SHORT_CODE_LENGTH = 3


class ShortCodeExhaustedError(RuntimeError):
    pass


def generate_short_code() -> str:
    return "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(SHORT_CODE_LENGTH))


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


class NotificationService:
    def __init__(self, db: Session, delivery: DeliveryService | None = None) -> None:
        self.db = db
        self.settings = get_settings()
        self.delivery = delivery or DeliveryService(db)

    def create(
        self,
        user: User,
        message: str,
        priority: int | None = None,
        options: list[str] | None = None,
        tags: list[str] | None = None,
        context: dict | None = None,
        session_key: str | None = None,
        workspace: str | None = None,
    ) -> Notification:
        priority = self.settings.default_priority if priority is None else priority
        session = self._find_or_create_session(user.id, session_key, workspace) if session_key else None

        notification = Notification(
            short_code=self._allocate_short_code(),
            user_id=user.id,
            session_id=session.id if session is not None else None,
            message=message,
            priority=priority,
            context=context,
            tags=list(tags or []),
            options=list(options or []),
            status=STATUS_PENDING,
            policy_id=EscalationService(self.db).resolve_policy_id(user.id, priority),
        )
        self.db.add(notification)
        self.db.commit()
        self.db.refresh(notification)
        logger.info(
            "Notification created",
            extra={"notification_id": notification.id, "short_code": notification.short_code, "priority": priority},
        )

        self.delivery.deliver(notification.id)
        self._start_escalation(notification.id)

        self.db.refresh(notification)
        return notification

    def get_for_user(self, user_id: str, id_or_code: str) -> Notification | None:
        query = select(Notification).where(Notification.user_id == user_id)
        if _is_uuid(id_or_code):
            query = query.where(Notification.id == id_or_code)
        else:
            query = query.where(Notification.short_code == id_or_code.upper())
        return self.db.scalar(query.order_by(Notification.created_at.desc()).limit(1))

    def list_for_user(self, user_id: str, status: str | None = None, limit: int = 50) -> list[Notification]:
        query = select(Notification).where(Notification.user_id == user_id)
        if status:
            query = query.where(Notification.status == status)
        return list(self.db.scalars(query.order_by(Notification.created_at.desc()).limit(limit)))

    def active_feed(self, user_id: str) -> list[Notification]:
        return list(
            self.db.scalars(
                select(Notification)
                .where(Notification.user_id == user_id, Notification.status.in_(ACTIVE_STATUSES))
                .order_by(Notification.created_at.desc())
            )
        )

    def responses_for(self, notification_id: str) -> list[Response]:
        return list(
            self.db.scalars(
                select(Response).where(Response.notification_id == notification_id).order_by(Response.created_at)
            )
        )

    def respond(
        self,
        notification: Notification,
        responder_id: str,
        text: str | None = None,
        selected_option: str | None = None,
    ) -> Response:
        return ResponseRecorder(self.db).record(
            notification,
            responder_id,
            CHANNEL_API,
            text=text,
            selected_option=selected_option,
        )

    def archive(self, notification: Notification) -> Notification:
        notification.status = STATUS_ARCHIVED
        notification.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(notification)
        return notification

    def archive_all(self, user_id: str) -> int:
        result = self.db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.status.in_(ACTIVE_STATUSES))
            .values(status=STATUS_ARCHIVED, updated_at=utc_now())
        )
        self.db.commit()
        return result.rowcount or 0

    def snooze(self, notification: Notification, minutes: int) -> Notification:
        notification.snoozed_until = utc_now() + timedelta(minutes=minutes)
        notification.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(notification)
        return notification

    def _allocate_short_code(self) -> str:
        # Codes only have to be unique among active notifications.
        for _ in range(max(self.settings.short_code_max_attempts, 1)):
            code = generate_short_code()
            taken = self.db.scalar(
                select(Notification.id)
                .where(Notification.short_code == code, Notification.status.in_(ACTIVE_STATUSES))
                .limit(1)
            )
            if taken is None:
                return code
        raise ShortCodeExhaustedError("Could not allocate a free short code")

    def _find_or_create_session(self, user_id: str, session_key: str, workspace: str | None) -> AgentSession:
        session = self.db.scalar(
            select(AgentSession).where(AgentSession.user_id == user_id, AgentSession.session_key == session_key)
        )
        if session is not None:
            return session
        session = AgentSession(user_id=user_id, session_key=session_key, workspace=workspace)
        self.db.add(session)
        self.db.commit()
        self.db.refresh(session)
        return session

    def _start_escalation(self, notification_id: str) -> None:
        try:
            get_workflow_engine().emit(NOTIFICATION_CREATED, {NOTIFICATION_ID_FIELD: notification_id})
        except Exception as exc:  # noqa: BLE001
            logger.warning("Escalation start signal failed for %s: %s", notification_id, exc)
