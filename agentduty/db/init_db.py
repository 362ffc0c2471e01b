from agentduty.db.models import Base
from agentduty.db.session import get_engine


def init_db() -> None:
    Base.metadata.create_all(bind=get_engine())
