from functools import lru_cache

from agentduty.db.session import get_session_factory
from agentduty.workflows.engine import WorkflowEngine
from agentduty.workflows.escalation import ESCALATE_NOTIFICATION


@lru_cache(maxsize=1)
def get_workflow_engine() -> WorkflowEngine:
    return WorkflowEngine(get_session_factory(), functions=[ESCALATE_NOTIFICATION])
