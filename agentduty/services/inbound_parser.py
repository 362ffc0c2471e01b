"""Turn an inbound SMS or Slack DM into a structured reply intent.

Three reply shapes are recognised, in order:

1. ``"ABC some text"``: a three character upper-case short code followed by text.
2. ``"2"``: a 1-based option number for the user's latest delivered notification.
3. Anything else: free text for the user's latest delivered notification.

Parsing never writes to the database.
"""

import re
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from agentduty.db.models import ACTIVE_STATUSES, STATUS_DELIVERED, Notification

# Case-sensitive so ordinary words like "did" or "the" never look like codes.
SHORT_CODE_RE = re.compile(r"([A-Z0-9]{3})\s+(.+)")
OPTION_NUMBER_RE = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class ShortCodeReply:
    notification: Notification
    text: str


@dataclass(frozen=True)
class OptionSelected:
    notification: Notification
    selected_option: str


@dataclass(frozen=True)
class FreeformReply:
    notification: Notification
    text: str


@dataclass(frozen=True)
class InvalidOption:
    pass


@dataclass(frozen=True)
class NotFound:
    short_code: str


@dataclass(frozen=True)
class NoActiveTarget:
    pass


Intent = ShortCodeReply | OptionSelected | FreeformReply | InvalidOption | NotFound | NoActiveTarget


def select_option(options: list[str] | None, raw_number: str) -> str | None:
    index = int(raw_number) - 1
    if options and 0 <= index < len(options):
        return options[index]
    return None


class InboundMessageParser:
    def __init__(self, db: Session) -> None:
        self.db = db

    def parse(self, text: str, user_id: str) -> Intent:
        code_match = SHORT_CODE_RE.fullmatch(text)
        if code_match:
            short_code = code_match.group(1).upper()
            notification = self.find_active_by_code(user_id, short_code)
            if notification is None:
                return NotFound(short_code=short_code)
            return ShortCodeReply(notification=notification, text=code_match.group(2))

        if OPTION_NUMBER_RE.fullmatch(text):
            notification = self.latest_delivered(user_id)
            if notification is None:
                return NoActiveTarget()
            selected = select_option(notification.options, text)
            if selected is None:
                return InvalidOption()
            return OptionSelected(notification=notification, selected_option=selected)

        notification = self.latest_delivered(user_id)
        if notification is None:
            return NoActiveTarget()
        return FreeformReply(notification=notification, text=text)

    def find_active_by_code(self, user_id: str, short_code: str) -> Notification | None:
        return self.db.scalar(
            select(Notification)
            .where(
                Notification.user_id == user_id,
                Notification.short_code == short_code.upper(),
                Notification.status.in_(ACTIVE_STATUSES),
            )
            .order_by(Notification.created_at.desc())
            .limit(1)
        )

    def latest_delivered(self, user_id: str) -> Notification | None:
        return self.db.scalar(
            select(Notification)
            .where(Notification.user_id == user_id, Notification.status == STATUS_DELIVERED)
            .order_by(Notification.created_at.desc())
            .limit(1)
        )
