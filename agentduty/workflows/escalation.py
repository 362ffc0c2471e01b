from datetime import datetime

from agentduty.services.escalation_service import EscalationService
from agentduty.workflows.engine import CancelOn, WorkflowContext, WorkflowFunction
from agentduty.workflows.events import NOTIFICATION_CREATED, NOTIFICATION_ID_FIELD, NOTIFICATION_RESPONDED


def escalate_notification(ctx: WorkflowContext) -> dict:
    """Re-deliver a notification through its policy's steps until answered.

    Step keys are stable across replays; changing them orphans runs in flight.
    """
    notification_id = ctx.event_data[NOTIFICATION_ID_FIELD]
    service = EscalationService(ctx.db)

    snapshot = ctx.step.run("fetch-notification", lambda: service.load_snapshot(notification_id))
    if snapshot is None:
        return {"error": "not_found"}

    policy_id = snapshot["policy_id"]
    if not policy_id:
        channel = ctx.step.run("deliver-default", lambda: service.deliver_default(notification_id))
        return {"delivered": True, "channel": channel}

    steps = ctx.step.run("fetch-steps", lambda: service.load_steps(policy_id))
    for index, step in enumerate(steps):
        if index > 0:
            ctx.step.sleep(f"wait-step-{index}", step["delay_seconds"])

        snoozed_until = ctx.step.run(
            f"check-snooze-{index}",
            lambda: service.snoozed_until(notification_id, ctx.now),
        )
        if snoozed_until:
            ctx.step.sleep_until(f"snooze-step-{index}", datetime.fromisoformat(snoozed_until))

        ctx.step.run(
            f"deliver-step-{index}",
            lambda index=index, channel=step["channel"]: service.deliver_step(notification_id, index, channel),
        )

    return {"escalated": True, "steps": len(steps)}


ESCALATE_NOTIFICATION = WorkflowFunction(
    function_id="escalate-notification",
    trigger=NOTIFICATION_CREATED,
    handler=escalate_notification,
    cancel_on=CancelOn(event=NOTIFICATION_RESPONDED, match=NOTIFICATION_ID_FIELD),
)
