from fastapi import HTTPException
from slack_sdk.signature import SignatureVerifier

from agentduty.core.config import get_settings

SLACK_SIGNATURE_HEADER = "x-slack-signature"
SLACK_TIMESTAMP_HEADER = "x-slack-request-timestamp"
SLACK_RETRY_HEADER = "x-slack-retry-num"


def validate_slack_request(body: bytes, timestamp: str | None, signature: str | None) -> None:
    settings = get_settings()
    if not settings.slack_validate_signatures:
        return

    if not settings.slack_signing_secret:
        raise HTTPException(status_code=500, detail="Slack signature validation enabled without signing secret")

    if not timestamp or not signature:
        raise HTTPException(status_code=401, detail="Missing Slack signature")

    # SignatureVerifier also rejects timestamps older than five minutes.
    verifier = SignatureVerifier(signing_secret=settings.slack_signing_secret)
    if not verifier.is_valid(body=body, timestamp=timestamp, signature=signature):
        raise HTTPException(status_code=401, detail="Invalid Slack signature")
