from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from agentduty.core.config import get_settings
from agentduty.db.models import Delivery, Notification, Response, WorkflowRun
from agentduty.db.session import get_db
from agentduty.schemas.common import HealthResponse
from agentduty.workflows.engine import RUN_SLEEPING

router = APIRouter(prefix="/v1", tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    settings = get_settings()
    return HealthResponse(status="ok", app_env=settings.app_env)


@router.get("/metrics")
def metrics(db: Session = Depends(get_db)) -> dict:
    by_status = dict(
        db.execute(select(Notification.status, func.count()).group_by(Notification.status)).all()
    )
    return {
        "notifications_total": sum(by_status.values()),
        "notifications_by_status": by_status,
        "deliveries_total": db.scalar(select(func.count()).select_from(Delivery)) or 0,
        "responses_total": db.scalar(select(func.count()).select_from(Response)) or 0,
        "workflow_runs_sleeping": db.scalar(
            select(func.count()).select_from(WorkflowRun).where(WorkflowRun.status == RUN_SLEEPING)
        )
        or 0,
    }
