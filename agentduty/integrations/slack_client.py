import json
import logging
from dataclasses import dataclass

from slack_sdk import WebClient

from agentduty.core.config import get_settings

logger = logging.getLogger(__name__)

ACTION_PREFIX = "respond_"
OTHER_OPTION = "other"
OTHER_OPTION_VALUE = "__other__"
RESPONSE_MODAL_CALLBACK_ID = "respond_modal"
RESPONSE_BLOCK_ID = "response_block"
RESPONSE_ACTION_ID = "response_text"


class SlackNotConfiguredError(RuntimeError):
    pass


@dataclass
class SlackPostResult:
    ts: str
    channel: str


def action_id_for(notification_id: str, option: int | str) -> str:
    return f"{ACTION_PREFIX}{notification_id}_{option}"


def notification_text(short_code: str, message: str) -> str:
    return f"[{short_code}] {message}"


def build_notification_blocks(
    notification_id: str,
    short_code: str,
    message: str,
    options: list[str] | None = None,
) -> list[dict]:
    blocks: list[dict] = [
        {"type": "section", "text": {"type": "mrkdwn", "text": f"*[{short_code}]* {message}"}},
    ]
    if options:
        buttons = [
            {
                "type": "button",
                "text": {"type": "plain_text", "text": option, "emoji": True},
                "value": option,
                "action_id": action_id_for(notification_id, index),
            }
            for index, option in enumerate(options)
        ]
        buttons.append(
            {
                "type": "button",
                "text": {"type": "plain_text", "text": "Other...", "emoji": True},
                "value": OTHER_OPTION_VALUE,
                "action_id": action_id_for(notification_id, OTHER_OPTION),
            }
        )
        blocks.append({"type": "actions", "elements": buttons})
    return blocks


def build_selection_blocks(short_code: str, message: str, selection: str) -> list[dict]:
    return [
        {"type": "section", "text": {"type": "mrkdwn", "text": f"*[{short_code}]* {message}"}},
        {"type": "context", "elements": [{"type": "mrkdwn", "text": f":white_check_mark: {selection}"}]},
    ]


def build_response_modal(
    notification_id: str,
    short_code: str,
    message: str,
    channel_id: str | None,
    message_ts: str | None,
) -> dict:
    metadata = {
        "notificationId": notification_id,
        "shortCode": short_code,
        "message": message,
        "channelId": channel_id,
        "messageTs": message_ts,
    }
    return {
        "type": "modal",
        "callback_id": RESPONSE_MODAL_CALLBACK_ID,
        "private_metadata": json.dumps(metadata),
        "title": {"type": "plain_text", "text": "Custom Response"},
        "submit": {"type": "plain_text", "text": "Send"},
        "blocks": [
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*[{short_code}]* {message}"}},
            {
                "type": "input",
                "block_id": RESPONSE_BLOCK_ID,
                "element": {
                    "type": "plain_text_input",
                    "action_id": RESPONSE_ACTION_ID,
                    "multiline": True,
                    "placeholder": {"type": "plain_text", "text": "Type your response..."},
                },
                "label": {"type": "plain_text", "text": "Your response"},
            },
        ],
    }


class SlackClient:
    """Thin wrapper over the Slack Web API calls the service makes.

    Every method raises ``SlackNotConfiguredError`` when no bot token is set and
    lets ``slack_sdk.errors.SlackApiError`` propagate; callers decide whether a
    failure is recorded or swallowed.
    """

    def __init__(self, client: WebClient | None = None) -> None:
        self.settings = get_settings()
        self._client = client

    @property
    def web(self) -> WebClient:
        if self._client is None:
            if not self.settings.slack_bot_token:
                raise SlackNotConfiguredError("SLACK_BOT_TOKEN is not configured")
            self._client = WebClient(token=self.settings.slack_bot_token)
        return self._client

    def send_notification(
        self,
        slack_user_id: str,
        notification_id: str,
        short_code: str,
        message: str,
        options: list[str] | None = None,
        thread_ts: str | None = None,
        channel: str | None = None,
    ) -> SlackPostResult:
        kwargs = {}
        if thread_ts:
            kwargs["thread_ts"] = thread_ts
        response = self.web.chat_postMessage(
            channel=channel or slack_user_id,
            text=notification_text(short_code, message),
            blocks=build_notification_blocks(notification_id, short_code, message, options),
            **kwargs,
        )
        return SlackPostResult(ts=response["ts"], channel=response["channel"])

    def post_session_header(
        self,
        slack_user_id: str,
        session_key: str,
        workspace: str | None = None,
    ) -> SlackPostResult:
        text = f"*Agent session* `{session_key}`"
        if workspace:
            text += f" in `{workspace}`"
        response = self.web.chat_postMessage(channel=slack_user_id, text=text)
        return SlackPostResult(ts=response["ts"], channel=response["channel"])

    def update_notification_message(
        self,
        channel: str,
        ts: str,
        short_code: str,
        message: str,
        selection: str,
    ) -> None:
        self.web.chat_update(
            channel=channel,
            ts=ts,
            text=f"{notification_text(short_code, message)} -> {selection}",
            blocks=build_selection_blocks(short_code, message, selection),
        )

    def open_response_modal(self, trigger_id: str, view: dict) -> None:
        self.web.views_open(trigger_id=trigger_id, view=view)

    def post_text(self, channel: str, text: str) -> None:
        self.web.chat_postMessage(channel=channel, text=text)
