import hashlib
import logging
import re
import secrets
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from agentduty.core.clock import as_utc, utc_now
from agentduty.core.config import get_settings
from agentduty.db.models import ApiKey, User

logger = logging.getLogger(__name__)

LINK_CODE_RE = re.compile(r"LINK-[A-Z0-9]{6}", re.IGNORECASE)
LINK_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
API_KEY_PREFIX = "adk_"


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def match_link_code(text: str) -> str | None:
    match = LINK_CODE_RE.fullmatch(text.strip())
    return match.group(0).upper() if match else None


class AccountLinkService:
    """API keys for agents and one-time codes that bind a Slack account to a user."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self.settings = get_settings()

    def issue_api_key(self, user: User, name: str) -> tuple[ApiKey, str]:
        raw_key = API_KEY_PREFIX + secrets.token_urlsafe(32)
        api_key = ApiKey(user_id=user.id, name=name, key_prefix=raw_key[:8], key_hash=hash_api_key(raw_key))
        self.db.add(api_key)
        self.db.commit()
        self.db.refresh(api_key)
        return api_key, raw_key

    def authenticate(self, raw_key: str) -> User | None:
        if not raw_key:
            return None
        api_key = self.db.scalar(select(ApiKey).where(ApiKey.key_hash == hash_api_key(raw_key)))
        if api_key is None:
            return None
        api_key.last_used_at = utc_now()
        self.db.commit()
        return self.db.get(User, api_key.user_id)

    def issue_slack_link_code(self, user: User) -> str:
        code = "LINK-" + "".join(secrets.choice(LINK_CODE_ALPHABET) for _ in range(6))
        user.slack_link_code = code
        user.slack_link_code_expires_at = utc_now() + timedelta(minutes=max(self.settings.slack_link_code_ttl_minutes, 1))
        self.db.commit()
        return code

    def redeem_slack_link_code(self, code: str, slack_user_id: str, slack_team_id: str | None = None) -> User | None:
        user = self.db.scalar(select(User).where(User.slack_link_code == code.upper()))
        if user is None:
            return None
        expires_at = as_utc(user.slack_link_code_expires_at)
        if expires_at is None or expires_at <= utc_now():
            return None

        user.slack_user_id = slack_user_id
        if slack_team_id:
            user.slack_team_id = slack_team_id
        user.slack_link_code = None
        user.slack_link_code_expires_at = None
        self.db.commit()
        logger.info("Slack account linked", extra={"user_id": user.id})
        return user
