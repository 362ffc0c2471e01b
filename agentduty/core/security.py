import hmac

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from agentduty.core.config import get_settings
from agentduty.db.models import User
from agentduty.db.session import get_db
from agentduty.services.account_link_service import AccountLinkService


async def verify_admin_key(x_admin_key: str = Header(default="")) -> None:
    settings = get_settings()
    if not any(hmac.compare_digest(x_admin_key, key) for key in settings.admin_api_keys_list):
        raise HTTPException(status_code=401, detail="Invalid admin API key")


def get_current_user(x_api_key: str = Header(default=""), db: Session = Depends(get_db)) -> User:
    user = AccountLinkService(db).authenticate(x_api_key)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return user
