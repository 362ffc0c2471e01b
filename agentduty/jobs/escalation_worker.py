import argparse
import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from agentduty.core.config import get_settings
from agentduty.core.logging import configure_logging
from agentduty.db.init_db import init_db
from agentduty.workflows.registry import get_workflow_engine

logger = logging.getLogger(__name__)

RUN_DUE_JOB_ID = "escalation:run-due"
_MISFIRE_GRACE_TIME_S = 30


def run_due_workflows() -> dict:
    """Resume every workflow run whose sleep has elapsed."""
    return {"executed": get_workflow_engine().run_due()}


def tick() -> None:
    try:
        result = run_due_workflows()
    except Exception:  # noqa: BLE001
        logger.exception("Escalation worker tick failed")
        return
    if result["executed"]:
        logger.info("Resumed workflow runs", extra=result)


def build_scheduler() -> BlockingScheduler:
    interval = max(get_settings().workflow_poll_interval_seconds, 0.1)
    scheduler = BlockingScheduler(
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": _MISFIRE_GRACE_TIME_S}
    )
    # One tick at a time per process; the engine's run claims cover other processes.
    scheduler.add_job(
        tick,
        trigger=IntervalTrigger(seconds=interval),
        id=RUN_DUE_JOB_ID,
        name="Resume due escalation runs",
        coalesce=True,
        max_instances=1,
        replace_existing=True,
    )
    return scheduler


def run_forever() -> None:
    scheduler = build_scheduler()
    logger.info("Escalation worker started", extra={"interval_seconds": get_settings().workflow_poll_interval_seconds})
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Escalation worker stopped")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Drive sleeping escalation workflows.")
    parser.add_argument("--loop", action="store_true", help="keep polling instead of running once")
    args = parser.parse_args()

    configure_logging(get_settings().log_level)
    init_db()
    if args.loop:
        run_forever()
    else:
        print(run_due_workflows())
