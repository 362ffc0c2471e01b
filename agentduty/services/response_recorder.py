import logging

from sqlalchemy.orm import Session

from agentduty.core.clock import utc_now
from agentduty.db.models import STATUS_RESPONDED, Notification, Response
from agentduty.workflows.events import NOTIFICATION_ID_FIELD, NOTIFICATION_RESPONDED
from agentduty.workflows.registry import get_workflow_engine

logger = logging.getLogger(__name__)


class ResponseRecorder:
    def __init__(self, db: Session) -> None:
        self.db = db

    def record(
        self,
        notification: Notification,
        responder_id: str,
        channel: str,
        text: str | None = None,
        selected_option: str | None = None,
        external_id: str | None = None,
    ) -> Response:
        response = Response(
            notification_id=notification.id,
            channel=channel,
            text=text,
            selected_option=selected_option,
            external_id=external_id,
            responder_id=responder_id,
        )
        self.db.add(response)
        notification.status = STATUS_RESPONDED
        notification.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(response)

        logger.info(
            "Response recorded",
            extra={"notification_id": notification.id, "channel": channel, "has_option": selected_option is not None},
        )
        self._cancel_escalation(notification.id)
        return response

    def _cancel_escalation(self, notification_id: str) -> None:
        try:
            get_workflow_engine().emit(NOTIFICATION_RESPONDED, {NOTIFICATION_ID_FIELD: notification_id})
        except Exception as exc:  # noqa: BLE001
            logger.warning("Escalation cancellation signal failed for %s: %s", notification_id, exc)
