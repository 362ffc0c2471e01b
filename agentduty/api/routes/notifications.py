from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from agentduty.core.security import get_current_user
from agentduty.db.models import Notification, User
from agentduty.db.session import get_db
from agentduty.schemas.notification import (
    ArchiveAllResponse,
    NotificationCreateRequest,
    NotificationDetail,
    NotificationOut,
    RespondRequest,
    ResponseOut,
    SlackLinkCodeResponse,
    SnoozeRequest,
)
from agentduty.services.account_link_service import AccountLinkService
from agentduty.services.notification_service import NotificationService, ShortCodeExhaustedError

router = APIRouter(prefix="/v1", tags=["notifications"])

STATUS_PATTERN = "^(pending|delivered|responded|expired|archived)$"


def _load(service: NotificationService, user: User, id_or_code: str) -> Notification:
    notification = service.get_for_user(user.id, id_or_code)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


def _detail(service: NotificationService, notification: Notification) -> NotificationDetail:
    detail = NotificationDetail.model_validate(notification)
    detail.responses = [ResponseOut.model_validate(item) for item in service.responses_for(notification.id)]
    return detail


@router.post("/notifications", response_model=NotificationOut, status_code=201)
def create_notification(
    payload: NotificationCreateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Notification:
    try:
        return NotificationService(db).create(
            user,
            payload.message,
            priority=payload.priority,
            options=payload.options,
            tags=payload.tags,
            context=payload.context,
            session_key=payload.session_key,
            workspace=payload.workspace,
        )
    except ShortCodeExhaustedError as exc:
        raise HTTPException(status_code=503, detail="No short code available, retry shortly") from exc


@router.get("/notifications", response_model=list[NotificationOut])
def list_notifications(
    status: str | None = Query(default=None, pattern=STATUS_PATTERN),
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[Notification]:
    return NotificationService(db).list_for_user(user.id, status=status, limit=limit)


@router.get("/notifications/active", response_model=list[NotificationOut])
def active_notifications(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> list[Notification]:
    return NotificationService(db).active_feed(user.id)


@router.post("/notifications/archive-all", response_model=ArchiveAllResponse)
def archive_all_notifications(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ArchiveAllResponse:
    return ArchiveAllResponse(archived=NotificationService(db).archive_all(user.id))


@router.get("/notifications/{id_or_code}", response_model=NotificationDetail)
def get_notification(
    id_or_code: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> NotificationDetail:
    service = NotificationService(db)
    return _detail(service, _load(service, user, id_or_code))


@router.post("/notifications/{id_or_code}/respond", response_model=NotificationDetail)
def respond_to_notification(
    id_or_code: str,
    payload: RespondRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> NotificationDetail:
    service = NotificationService(db)
    notification = _load(service, user, id_or_code)
    service.respond(notification, user.id, text=payload.text, selected_option=payload.selected_option)
    db.refresh(notification)
    return _detail(service, notification)


@router.post("/notifications/{id_or_code}/archive", response_model=NotificationOut)
def archive_notification(
    id_or_code: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Notification:
    service = NotificationService(db)
    return service.archive(_load(service, user, id_or_code))


@router.post("/notifications/{id_or_code}/snooze", response_model=NotificationOut)
def snooze_notification(
    id_or_code: str,
    payload: SnoozeRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Notification:
    service = NotificationService(db)
    return service.snooze(_load(service, user, id_or_code), payload.minutes)


@router.post("/me/slack-link-code", response_model=SlackLinkCodeResponse)
def issue_slack_link_code(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> SlackLinkCodeResponse:
    code = AccountLinkService(db).issue_slack_link_code(user)
    db.refresh(user)
    return SlackLinkCodeResponse(code=code, expires_at=user.slack_link_code_expires_at)
