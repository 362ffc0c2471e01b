import sys

from agentduty.db.session import session_scope
from agentduty.services.retention_service import RetentionService


def run_maintenance(updated_by: str = "system", dry_run: bool = False) -> dict:
    with session_scope() as session:
        return RetentionService(session).run_cleanup(updated_by=updated_by, dry_run=dry_run)


if __name__ == "__main__":
    print(run_maintenance(dry_run="--dry-run" in sys.argv[1:]))
