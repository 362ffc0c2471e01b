import json
import logging
import re

from sqlalchemy import select
from sqlalchemy.orm import Session

from agentduty.db.models import CHANNEL_SLACK, Notification, User
from agentduty.integrations.slack_client import (
    OTHER_OPTION,
    RESPONSE_ACTION_ID,
    RESPONSE_BLOCK_ID,
    RESPONSE_MODAL_CALLBACK_ID,
    SlackClient,
    build_response_modal,
)
from agentduty.services.account_link_service import AccountLinkService, match_link_code
from agentduty.services.inbound_parser import (
    OPTION_NUMBER_RE,
    FreeformReply,
    InboundMessageParser,
    InvalidOption,
    NotFound,
    OptionSelected,
    ShortCodeReply,
    select_option,
)
from agentduty.services.response_recorder import ResponseRecorder
from agentduty.services.sms_webhook_service import INVALID_OPTION_REPLY, not_found_reply
from agentduty.services.thread_correlator import ThreadCorrelator

logger = logging.getLogger(__name__)

ACTION_ID_RE = re.compile(r"respond_([^_]+)_(.+)")
FILE_SHARE_SUBTYPE = "file_share"
MODAL_CLEAR = {"response_action": "clear"}
UNLINKED_REPLY = (
    "I don't recognize your Slack account. To link your account, run `agentduty connect slack` "
    "in your terminal and DM me the code."
)
INVALID_LINK_REPLY = "Invalid or expired link code. Run `agentduty connect slack` to generate a new one."


def message_text(event: dict) -> str:
    """Reply text with any shared files appended as markdown links."""
    text = (event.get("text") or "").strip()
    files = event.get("files") or []
    file_lines = [f"[{item.get('name', 'file')}]({item.get('permalink', '')})" for item in files]
    if not file_lines:
        return text
    return "\n".join([text, *file_lines]) if text else "\n".join(file_lines)


def truncate(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


class SlackWebhookService:
    def __init__(self, db: Session, slack: SlackClient | None = None) -> None:
        self.db = db
        self.slack = slack or SlackClient()
        self.parser = InboundMessageParser(db)
        self.recorder = ResponseRecorder(db)
        self.correlator = ThreadCorrelator(db)

    # Events API

    def handle_event(self, payload: dict) -> dict | None:
        if payload.get("type") == "url_verification":
            return {"challenge": payload.get("challenge")}
        if payload.get("type") != "event_callback":
            return None

        event = payload.get("event") or {}
        if event.get("bot_id"):
            return None
        subtype = event.get("subtype")
        if subtype and subtype != FILE_SHARE_SUBTYPE:
            return None
        if event.get("type") != "message":
            return None

        if event.get("thread_ts"):
            self.handle_thread_reply(event)
        elif event.get("channel_type") == "im":
            self.handle_direct_message(event, team_id=payload.get("team_id"))
        return None

    def handle_thread_reply(self, event: dict) -> None:
        match = self.correlator.resolve_thread_reply(event.get("user") or "", event["thread_ts"])
        if match is None:
            return

        text = message_text(event)
        if OPTION_NUMBER_RE.fullmatch(text):
            selected = select_option(match.notification.options, text)
            if selected is not None:
                self.recorder.record(
                    match.notification,
                    match.user.id,
                    CHANNEL_SLACK,
                    selected_option=selected,
                    external_id=event.get("ts"),
                )
                return

        # Thread replies count whatever the notification's status.
        self.recorder.record(match.notification, match.user.id, CHANNEL_SLACK, text=text, external_id=event.get("ts"))

    def handle_direct_message(self, event: dict, team_id: str | None = None) -> None:
        channel = event.get("channel")
        slack_user_id = event.get("user") or ""

        link_code = match_link_code(event.get("text") or "")
        if link_code:
            self._link_account(channel, slack_user_id, link_code, team_id)
            return

        user = self._user_for(slack_user_id)
        if user is None:
            self._reply(channel, UNLINKED_REPLY)
            return

        intent = self.parser.parse(message_text(event), user.id)
        external_id = event.get("ts")
        if isinstance(intent, (ShortCodeReply, FreeformReply)):
            self.recorder.record(intent.notification, user.id, CHANNEL_SLACK, text=intent.text, external_id=external_id)
        elif isinstance(intent, OptionSelected):
            self.recorder.record(
                intent.notification,
                user.id,
                CHANNEL_SLACK,
                selected_option=intent.selected_option,
                external_id=external_id,
            )
        elif isinstance(intent, InvalidOption):
            self._reply(channel, INVALID_OPTION_REPLY)
        elif isinstance(intent, NotFound):
            self._reply(channel, not_found_reply(intent.short_code))
        # NoActiveTarget: the user may just be chatting.

    # Interactivity

    def handle_interaction(self, payload: dict) -> dict | None:
        kind = payload.get("type")
        if kind == "block_actions":
            self._handle_block_action(payload)
            return None
        if kind == "view_submission":
            return self._handle_view_submission(payload)
        return None

    def _handle_block_action(self, payload: dict) -> None:
        actions = payload.get("actions") or []
        if not actions:
            return
        action = actions[0]
        match = ACTION_ID_RE.fullmatch(action.get("action_id") or "")
        if not match:
            return

        notification = self.db.get(Notification, match.group(1))
        if notification is None:
            return
        user = self._user_for((payload.get("user") or {}).get("id") or "")
        if user is None:
            return

        container = payload.get("container") or {}
        choice = match.group(2)
        if choice == OTHER_OPTION:
            trigger_id = payload.get("trigger_id")
            if trigger_id:
                view = build_response_modal(
                    notification.id,
                    notification.short_code,
                    notification.message,
                    container.get("channel_id"),
                    container.get("message_ts"),
                )
                try:
                    self.slack.open_response_modal(trigger_id, view)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Failed to open Slack response modal: %s", exc)
            return

        # Button action ids carry the zero-based option index.
        options = notification.options or []
        if OPTION_NUMBER_RE.fullmatch(choice) and int(choice) < len(options):
            selected = options[int(choice)]
        else:
            selected = action.get("value")
        if not selected:
            return
        self.recorder.record(
            notification,
            user.id,
            CHANNEL_SLACK,
            selected_option=selected,
            external_id=container.get("message_ts"),
        )
        self._show_selection(
            container.get("channel_id"),
            container.get("message_ts"),
            notification.short_code,
            notification.message,
            selected,
        )

    def _handle_view_submission(self, payload: dict) -> dict | None:
        view = payload.get("view") or {}
        if view.get("callback_id") != RESPONSE_MODAL_CALLBACK_ID:
            return None
        try:
            metadata = json.loads(view.get("private_metadata") or "{}")
        except json.JSONDecodeError:
            logger.warning("Slack modal submitted with unreadable metadata")
            return None
        if not isinstance(metadata, dict):
            return None

        values = (view.get("state") or {}).get("values") or {}
        text = ((values.get(RESPONSE_BLOCK_ID) or {}).get(RESPONSE_ACTION_ID) or {}).get("value") or ""

        notification_id = metadata.get("notificationId")
        notification = self.db.get(Notification, notification_id) if notification_id else None
        if notification is None:
            return None
        user = self._user_for((payload.get("user") or {}).get("id") or "")
        if user is None:
            return None

        self.recorder.record(notification, user.id, CHANNEL_SLACK, text=text)
        self._show_selection(
            metadata.get("channelId"),
            metadata.get("messageTs"),
            metadata.get("shortCode") or notification.short_code,
            metadata.get("message") or notification.message,
            f"Other: {truncate(text)}",
        )
        return MODAL_CLEAR

    # Helpers

    def _user_for(self, slack_user_id: str) -> User | None:
        if not slack_user_id:
            return None
        return self.db.scalar(select(User).where(User.slack_user_id == slack_user_id))

    def _link_account(self, channel: str | None, slack_user_id: str, code: str, team_id: str | None) -> None:
        user = AccountLinkService(self.db).redeem_slack_link_code(code, slack_user_id, team_id)
        if user is None:
            self._reply(channel, INVALID_LINK_REPLY)
            return
        self._reply(
            channel,
            f"Linked! Your Slack account is now connected to {user.email}. You'll receive notifications here.",
        )

    def _show_selection(
        self,
        channel: str | None,
        message_ts: str | None,
        short_code: str,
        message: str,
        selection: str,
    ) -> None:
        if not channel or not message_ts:
            return
        try:
            self.slack.update_notification_message(channel, message_ts, short_code, message, selection)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to update Slack message: %s", exc)

    def _reply(self, channel: str | None, text: str) -> None:
        if not channel:
            return
        try:
            self.slack.post_text(channel, text)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to post Slack reply: %s", exc)
