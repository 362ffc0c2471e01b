from datetime import timedelta

from agentduty.core.clock import utc_now
from agentduty.core.config import get_settings
from agentduty.db.models import Notification


def test_escalation_worker_resumes_due_runs(db, make_user, make_policy, transports, monkeypatch):
    from agentduty.jobs import escalation_worker
    from agentduty.services.notification_service import NotificationService

    user = make_user(phone="+15551230001")
    make_policy(user, [("sms", 0), ("sms", 60)])
    notification = NotificationService(db).create(user, "Deploy blocked. Retry?")
    assert len(transports.sms) == 2

    assert escalation_worker.run_due_workflows() == {"executed": 0}

    later = utc_now() + timedelta(seconds=61)
    monkeypatch.setattr("agentduty.workflows.engine.utc_now", lambda: later)
    assert escalation_worker.run_due_workflows() == {"executed": 1}
    assert len(transports.sms) == 3
    db.expire_all()
    assert db.get(Notification, notification.id).current_escalation_step == 1


def test_scheduler_polls_on_an_interval_without_overlapping_ticks(env, monkeypatch):
    from agentduty.jobs import escalation_worker

    monkeypatch.setenv("WORKFLOW_POLL_INTERVAL_SECONDS", "2.5")
    get_settings.cache_clear()

    scheduler = escalation_worker.build_scheduler()

    [job] = scheduler.get_jobs()
    assert job.id == escalation_worker.RUN_DUE_JOB_ID
    assert job.func is escalation_worker.tick
    assert job.trigger.interval == timedelta(seconds=2.5)
    assert job.max_instances == 1
    assert job.coalesce is True


def test_tick_logs_and_survives_a_failing_run(env, monkeypatch, caplog):
    from agentduty.jobs import escalation_worker

    def _explode():
        raise RuntimeError("database went away")

    monkeypatch.setattr(escalation_worker, "run_due_workflows", _explode)

    escalation_worker.tick()

    assert "Escalation worker tick failed" in caplog.text


def test_maintenance_job_runs_cleanup(db, make_user, make_notification):
    from agentduty.jobs.maintenance import run_maintenance

    user = make_user()
    stale = make_notification(user, created_at=utc_now() - timedelta(days=10))

    result = run_maintenance(updated_by="cron")

    assert result["expired_notifications"] == 1
    db.expire_all()
    assert db.get(Notification, stale.id).status == "expired"


def test_seed_script_creates_default_policy(db, make_user):
    from agentduty.db.models import EscalationPolicy, EscalationStep
    from agentduty.services.escalation_service import EscalationService
    from scripts.seed_escalation_policy import run

    user = make_user(email="oncall@example.com")

    policy_id = run("oncall@example.com")

    db.expire_all()
    assert db.get(EscalationPolicy, policy_id).is_default is True
    assert EscalationService(db).resolve_policy_id(user.id, 3) == policy_id
    steps = db.query(EscalationStep).filter_by(policy_id=policy_id).order_by(EscalationStep.step_order)
    channels = [step.channel for step in steps]
    assert channels == ["slack", "sms", "slack"]
