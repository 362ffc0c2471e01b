"""Durable, replay-based workflow engine backed by the application database.

A workflow function is a plain callable that receives a ``WorkflowContext``.
Each time a run is executed the function is replayed from the top: steps that
already completed return their memoized result, sleeps whose wake time has
passed fall through, and the first unfinished sleep suspends the run until a
driver (``run_due``) picks it up again. An executor claims a run with a
lease before replaying it, so overlapping drivers never replay the same run at
once; a lease left behind by a crashed executor expires after
``workflow_lease_seconds``. Runs are cancelled cooperatively by a
later event whose data matches the value captured from the triggering event.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from agentduty.core.clock import as_utc, utc_now
from agentduty.core.config import get_settings
from agentduty.db.models import WorkflowRun, WorkflowStep

logger = logging.getLogger(__name__)

RUN_RUNNING = "running"
RUN_SLEEPING = "sleeping"
RUN_COMPLETED = "completed"
RUN_CANCELLED = "cancelled"
RUN_FAILED = "failed"

LIVE_RUN_STATUSES = (RUN_RUNNING, RUN_SLEEPING)
FINISHED_RUN_STATUSES = (RUN_COMPLETED, RUN_CANCELLED, RUN_FAILED)


class SleepRequested(Exception):
    def __init__(self, wake_at: datetime) -> None:
        super().__init__(f"sleeping until {wake_at.isoformat()}")
        self.wake_at = wake_at


class RunCancelled(Exception):
    pass


@dataclass(frozen=True)
class CancelOn:
    event: str
    match: str


@dataclass(frozen=True)
class WorkflowFunction:
    function_id: str
    trigger: str
    handler: Callable[["WorkflowContext"], Any]
    cancel_on: CancelOn | None = None


class StepTools:
    def __init__(self, db: Session, run: WorkflowRun, now: datetime) -> None:
        self.db = db
        self.now = now
        self._run = run
        self._run_id = run.id
        self._steps = {
            row.step_key: row
            for row in db.scalars(select(WorkflowStep).where(WorkflowStep.run_id == run.id))
        }

    def run(self, key: str, fn: Callable[[], Any]) -> Any:
        record = self._steps.get(key)
        if record is not None and record.completed:
            return (record.result_json or {}).get("value")

        self._ensure_not_cancelled()
        value = fn()
        record = WorkflowStep(run_id=self._run_id, step_key=key, completed=True, result_json={"value": value})
        self.db.add(record)
        self.db.commit()
        self._steps[key] = record
        return value

    def sleep(self, key: str, seconds: int | float) -> None:
        record = self._steps.get(key)
        if record is not None:
            wake_at = as_utc(record.wake_at) or self.now
        else:
            wake_at = self.now + timedelta(seconds=max(float(seconds), 0.0))
        self.sleep_until(key, wake_at)

    def sleep_until(self, key: str, wake_at: datetime) -> None:
        record = self._steps.get(key)
        if record is None:
            self._ensure_not_cancelled()
            record = WorkflowStep(run_id=self._run_id, step_key=key, completed=False, wake_at=wake_at)
            self.db.add(record)
            self.db.commit()
            self._steps[key] = record

        if record.completed:
            return

        target = as_utc(record.wake_at)
        if target is None or target <= self.now:
            record.completed = True
            self.db.commit()
            return
        raise SleepRequested(target)

    def _ensure_not_cancelled(self) -> None:
        self.db.refresh(self._run)
        if self._run.status == RUN_CANCELLED:
            raise RunCancelled(self._run_id)


@dataclass
class WorkflowContext:
    db: Session
    run_id: str
    event_name: str
    event_data: dict
    step: StepTools
    now: datetime


class WorkflowEngine:
    def __init__(self, session_factory: Callable[[], Session], functions: Iterable[WorkflowFunction] = ()) -> None:
        self.settings = get_settings()
        self._session_factory = session_factory
        self._functions: dict[str, WorkflowFunction] = {}
        for function in functions:
            self.register(function)

    def register(self, function: WorkflowFunction) -> None:
        self._functions[function.function_id] = function

    def emit(self, event_name: str, data: dict, now: datetime | None = None) -> list[str]:
        now = now or utc_now()
        inline = self.settings.workflow_inline_dispatch
        run_ids: list[str] = []
        db = self._session_factory()
        try:
            cancelled = self._cancel_matching(db, event_name, data)
            for function in self._functions.values():
                if function.trigger != event_name:
                    continue
                # Inline runs start out claimed by this caller.
                run = WorkflowRun(
                    function_id=function.function_id,
                    event_name=event_name,
                    event_data=dict(data),
                    status=RUN_RUNNING,
                    wake_at=now,
                    claimed_until=self._lease_end(now) if inline else None,
                )
                if function.cancel_on is not None:
                    match_value = data.get(function.cancel_on.match)
                    run.cancel_event = function.cancel_on.event
                    run.cancel_match_value = None if match_value is None else str(match_value)
                db.add(run)
                db.flush()
                run_ids.append(run.id)
            db.commit()
        finally:
            db.close()

        logger.info(
            "Workflow event emitted",
            extra={"event_name": event_name, "runs_started": len(run_ids), "runs_cancelled": cancelled},
        )
        if inline:
            for run_id in run_ids:
                self._execute_claimed(run_id, now)
        return run_ids

    def execute(self, run_id: str, now: datetime | None = None) -> str | None:
        """Claim and replay one run. Returns None when another executor holds it."""
        now = now or utc_now()
        if not self._claim(run_id, now):
            logger.debug("Workflow run already claimed", extra={"run_id": run_id})
            return None
        return self._execute_claimed(run_id, now)

    def run_due(self, now: datetime | None = None) -> int:
        now = now or utc_now()
        db = self._session_factory()
        try:
            run_ids = list(
                db.scalars(
                    select(WorkflowRun.id)
                    .where(
                        WorkflowRun.status.in_(LIVE_RUN_STATUSES),
                        WorkflowRun.wake_at <= now,
                        or_(WorkflowRun.claimed_until.is_(None), WorkflowRun.claimed_until < now),
                    )
                    .order_by(WorkflowRun.wake_at)
                    .limit(max(self.settings.workflow_batch_size, 1))
                )
            )
        finally:
            db.close()

        executed = 0
        for run_id in run_ids:
            if self.execute(run_id, now=now) is not None:
                executed += 1
        return executed

    def _lease_end(self, now: datetime) -> datetime:
        return now + timedelta(seconds=max(self.settings.workflow_lease_seconds, 1))

    def _claim(self, run_id: str, now: datetime) -> bool:
        db = self._session_factory()
        try:
            result = db.execute(
                update(WorkflowRun)
                .where(
                    WorkflowRun.id == run_id,
                    WorkflowRun.status.in_(LIVE_RUN_STATUSES),
                    or_(WorkflowRun.claimed_until.is_(None), WorkflowRun.claimed_until < now),
                )
                .values(status=RUN_RUNNING, claimed_until=self._lease_end(now), updated_at=utc_now())
            )
            db.commit()
            return result.rowcount == 1
        finally:
            db.close()

    def _execute_claimed(self, run_id: str, now: datetime) -> str | None:
        db = self._session_factory()
        try:
            run = db.get(WorkflowRun, run_id)
            if run is None or run.status not in LIVE_RUN_STATUSES:
                return run.status if run is not None else None

            function = self._functions.get(run.function_id)
            if function is None:
                logger.warning("No workflow function registered", extra={"function_id": run.function_id})
                run.claimed_until = None
                db.commit()
                return run.status

            ctx = WorkflowContext(
                db=db,
                run_id=run.id,
                event_name=run.event_name,
                event_data=dict(run.event_data or {}),
                step=StepTools(db, run, now),
                now=now,
            )
            try:
                result = function.handler(ctx)
            except SleepRequested as pause:
                return self._finish(db, run_id, RUN_SLEEPING, wake_at=pause.wake_at)
            except RunCancelled:
                db.rollback()
                logger.info("Workflow run cancelled", extra={"run_id": run_id, "function_id": function.function_id})
                return RUN_CANCELLED
            except Exception as exc:  # noqa: BLE001
                db.rollback()
                logger.exception("Workflow run raised", extra={"run_id": run_id, "function_id": function.function_id})
                return self._record_failure(db, run_id, exc, now)

            return self._finish(db, run_id, RUN_COMPLETED, result={"value": result})
        finally:
            db.close()

    def _cancel_matching(self, db: Session, event_name: str, data: dict) -> int:
        cancelled = 0
        for function in self._functions.values():
            if function.cancel_on is None or function.cancel_on.event != event_name:
                continue
            match_value = data.get(function.cancel_on.match)
            if match_value is None:
                continue
            result = db.execute(
                update(WorkflowRun)
                .where(
                    WorkflowRun.function_id == function.function_id,
                    WorkflowRun.cancel_event == event_name,
                    WorkflowRun.cancel_match_value == str(match_value),
                    WorkflowRun.status.in_(LIVE_RUN_STATUSES),
                )
                .values(status=RUN_CANCELLED, wake_at=None, claimed_until=None, updated_at=utc_now())
            )
            cancelled += result.rowcount or 0
        return cancelled

    def _finish(
        self,
        db: Session,
        run_id: str,
        status: str,
        wake_at: datetime | None = None,
        result: dict | None = None,
    ) -> str:
        values: dict[str, Any] = {"status": status, "wake_at": wake_at, "claimed_until": None, "updated_at": utc_now()}
        if result is not None:
            values["result_json"] = result
        # A cancellation that landed mid-run wins over the run's own outcome.
        db.execute(
            update(WorkflowRun)
            .where(WorkflowRun.id == run_id, WorkflowRun.status.in_(LIVE_RUN_STATUSES))
            .values(**values)
        )
        db.commit()
        return db.scalar(select(WorkflowRun.status).where(WorkflowRun.id == run_id))

    def _record_failure(self, db: Session, run_id: str, exc: Exception, now: datetime) -> str:
        run = db.get(WorkflowRun, run_id)
        if run is None:
            return RUN_FAILED
        attempts = (run.attempts or 0) + 1
        run.attempts = attempts
        run.last_error = repr(exc)[:2000]
        db.commit()
        if attempts >= max(self.settings.workflow_max_attempts, 1):
            return self._finish(db, run_id, RUN_FAILED)
        retry_at = now + timedelta(seconds=max(self.settings.workflow_retry_seconds, 0))
        return self._finish(db, run_id, RUN_SLEEPING, wake_at=retry_at)
