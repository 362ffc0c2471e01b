import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from agentduty.db.models import CHANNEL_SMS, User
from agentduty.services.inbound_parser import (
    FreeformReply,
    InboundMessageParser,
    InvalidOption,
    NotFound,
    OptionSelected,
    ShortCodeReply,
)
from agentduty.services.response_recorder import ResponseRecorder

logger = logging.getLogger(__name__)

UNKNOWN_NUMBER_REPLY = "Unknown phone number. Please register your phone in AgentDuty."
RECORDED_REPLY = "Response recorded."
INVALID_OPTION_REPLY = "Invalid option number. Please try again."
NO_ACTIVE_REPLY = "No active notification to respond to."


def not_found_reply(short_code: str) -> str:
    return f"No active notification found with code {short_code}."


class SMSWebhookService:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.parser = InboundMessageParser(db)
        self.recorder = ResponseRecorder(db)

    def handle_inbound(self, from_number: str, body: str, message_sid: str | None = None) -> str:
        """Process one inbound SMS and return the text to reply with."""
        text = (body or "").strip()
        user = self.db.scalar(select(User).where(User.phone == from_number))
        if user is None:
            logger.info("Inbound SMS from unknown number")
            return UNKNOWN_NUMBER_REPLY

        intent = self.parser.parse(text, user.id)

        if isinstance(intent, ShortCodeReply):
            self.recorder.record(intent.notification, user.id, CHANNEL_SMS, text=intent.text, external_id=message_sid)
            return RECORDED_REPLY
        if isinstance(intent, OptionSelected):
            self.recorder.record(
                intent.notification,
                user.id,
                CHANNEL_SMS,
                selected_option=intent.selected_option,
                external_id=message_sid,
            )
            return f"Selected: {intent.selected_option}"
        if isinstance(intent, FreeformReply):
            self.recorder.record(intent.notification, user.id, CHANNEL_SMS, text=intent.text, external_id=message_sid)
            return RECORDED_REPLY
        if isinstance(intent, InvalidOption):
            return INVALID_OPTION_REPLY
        if isinstance(intent, NotFound):
            return not_found_reply(intent.short_code)
        return NO_ACTIVE_REPLY
