from datetime import timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from agentduty.core.clock import utc_now
from agentduty.core.config import get_settings
from agentduty.db.models import ACTIVE_STATUSES, STATUS_EXPIRED, AuditLog, Notification, WorkflowRun, WorkflowStep
from agentduty.workflows.engine import FINISHED_RUN_STATUSES


class RetentionService:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.settings = get_settings()

    def run_cleanup(self, updated_by: str, dry_run: bool = False) -> dict:
        now = utc_now()
        expiry_cutoff = now - timedelta(hours=max(self.settings.notification_expiry_hours, 1))
        workflow_cutoff = now - timedelta(days=max(self.settings.retention_days_workflows, 1))

        stale_notifications = (
            Notification.status.in_(ACTIVE_STATUSES),
            Notification.created_at < expiry_cutoff,
        )
        finished_runs = (
            WorkflowRun.status.in_(FINISHED_RUN_STATUSES),
            WorkflowRun.updated_at < workflow_cutoff,
        )

        notifications_to_expire = self.db.scalar(
            select(func.count()).select_from(Notification).where(*stale_notifications)
        ) or 0
        runs_to_delete = self.db.scalar(select(func.count()).select_from(WorkflowRun).where(*finished_runs)) or 0

        expired_notifications = 0
        deleted_runs = 0
        if not dry_run:
            expired_notifications = (
                self.db.execute(
                    update(Notification)
                    .where(*stale_notifications)
                    .values(status=STATUS_EXPIRED, updated_at=now)
                    .execution_options(synchronize_session=False)
                ).rowcount
                or 0
            )
            run_ids = select(WorkflowRun.id).where(*finished_runs).scalar_subquery()
            self.db.execute(
                delete(WorkflowStep)
                .where(WorkflowStep.run_id.in_(run_ids))
                .execution_options(synchronize_session=False)
            )
            deleted_runs = (
                self.db.execute(
                    delete(WorkflowRun).where(*finished_runs).execution_options(synchronize_session=False)
                ).rowcount
                or 0
            )
            self.db.add(
                AuditLog(
                    actor=updated_by,
                    action="maintenance_cleanup",
                    payload_json={
                        "expiry_cutoff": expiry_cutoff.isoformat(),
                        "workflow_cutoff": workflow_cutoff.isoformat(),
                        "expired_notifications": expired_notifications,
                        "deleted_workflow_runs": deleted_runs,
                    },
                )
            )
            self.db.commit()

        return {
            "dry_run": dry_run,
            "expiry_cutoff": expiry_cutoff.isoformat(),
            "workflow_cutoff": workflow_cutoff.isoformat(),
            "notifications_to_expire": int(notifications_to_expire),
            "workflow_runs_to_delete": int(runs_to_delete),
            "expired_notifications": int(expired_notifications),
            "deleted_workflow_runs": int(deleted_runs),
        }
