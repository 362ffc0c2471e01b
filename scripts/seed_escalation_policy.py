import sys

from sqlalchemy import select

from agentduty.db.init_db import init_db
from agentduty.db.models import CHANNEL_SLACK, CHANNEL_SMS, EscalationPolicy, EscalationStep, User
from agentduty.db.session import session_scope

# Slack first, SMS after five minutes, Slack again after fifteen.
DEFAULT_STEPS = [(CHANNEL_SLACK, 0), (CHANNEL_SMS, 300), (CHANNEL_SLACK, 900)]


def run(email: str) -> str:
    init_db()
    with session_scope() as session:
        user = session.scalar(select(User).where(User.email == email))
        if user is None:
            raise SystemExit(f"No user with email {email}")

        for existing in session.scalars(
            select(EscalationPolicy).where(EscalationPolicy.user_id == user.id, EscalationPolicy.is_default.is_(True))
        ):
            existing.is_default = False

        policy = EscalationPolicy(user_id=user.id, name="Default escalation", is_default=True)
        session.add(policy)
        session.flush()
        for order, (channel, delay_seconds) in enumerate(DEFAULT_STEPS):
            session.add(
                EscalationStep(policy_id=policy.id, step_order=order, channel=channel, delay_seconds=delay_seconds)
            )
        session.commit()
        print(f"Created policy {policy.id} for {email}")
        return policy.id


if __name__ == "__main__":
    if len(sys.argv) != 2:
        raise SystemExit("usage: python scripts/seed_escalation_policy.py <user-email>")
    run(sys.argv[1])
