import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from agentduty.db.session import get_db
from agentduty.integrations.slack_security import (
    SLACK_RETRY_HEADER,
    SLACK_SIGNATURE_HEADER,
    SLACK_TIMESTAMP_HEADER,
    validate_slack_request,
)
from agentduty.services.slack_webhook_service import SlackWebhookService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/slack", tags=["slack"])


def _ok() -> PlainTextResponse:
    return PlainTextResponse("OK")


def _verify(request: Request, body: bytes) -> None:
    validate_slack_request(
        body,
        request.headers.get(SLACK_TIMESTAMP_HEADER),
        request.headers.get(SLACK_SIGNATURE_HEADER),
    )


@router.post("/events")
async def slack_events(request: Request, db: Session = Depends(get_db)):
    # Slack retries whenever we are slow; the first delivery already did the work.
    if request.headers.get(SLACK_RETRY_HEADER):
        return _ok()

    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("Slack event body is not JSON")
        return _ok()
    if not isinstance(payload, dict):
        return _ok()

    if payload.get("type") != "url_verification":
        _verify(request, body)

    try:
        result = await run_in_threadpool(SlackWebhookService(db).handle_event, payload)
    except Exception:  # noqa: BLE001
        logger.exception("Slack event handling failed")
        return _ok()

    if result is not None:
        return JSONResponse(result)
    return _ok()


@router.post("/interactions")
async def slack_interactions(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    _verify(request, body)

    form = await request.form()
    try:
        payload = json.loads(form.get("payload") or "")
    except (TypeError, ValueError):
        logger.warning("Slack interaction payload missing or unreadable")
        return _ok()
    if not isinstance(payload, dict):
        return _ok()

    try:
        result = await run_in_threadpool(SlackWebhookService(db).handle_interaction, payload)
    except Exception:  # noqa: BLE001
        logger.exception("Slack interaction handling failed")
        return _ok()

    if result is not None:
        return JSONResponse(result)
    return _ok()
