import logging

import requests

from agentduty.core.config import get_settings

logger = logging.getLogger(__name__)


class SMSNotConfiguredError(RuntimeError):
    pass


def compose_sms_body(short_code: str, message: str, options: list[str] | None = None) -> str:
    body = f"[{short_code}] {message}"
    if options:
        lines = [body, "", "Reply with:"]
        lines.extend(f"{index}. {option}" for index, option in enumerate(options, start=1))
        lines.extend(["", f'Or reply "{short_code} <your response>"'])
        return "\n".join(lines)
    return f'{body}\n\nReply "{short_code} <your response>"'


class TwilioSMSClient:
    def __init__(self) -> None:
        self.settings = get_settings()

    def send(self, to_number: str, body: str) -> str:
        if not self.settings.sms_configured:
            raise SMSNotConfiguredError("Twilio credentials or sender number are not configured")

        url = f"{self.settings.twilio_api_base_url}/Accounts/{self.settings.twilio_account_sid}/Messages.json"
        response = requests.post(
            url,
            data={"To": to_number, "From": self.settings.twilio_from_number, "Body": body},
            auth=(self.settings.twilio_account_sid, self.settings.twilio_auth_token),
            timeout=self.settings.sms_send_timeout_seconds,
        )
        response.raise_for_status()
        sid = response.json().get("sid", "")
        logger.info("SMS sent", extra={"sid": sid})
        return sid
