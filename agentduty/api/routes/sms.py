import logging

from fastapi import APIRouter, Depends, Header, Request, Response
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from agentduty.db.session import get_db
from agentduty.integrations.twilio_security import validate_twilio_request
from agentduty.integrations.twilio_xml import twiml_empty, twiml_message
from agentduty.services.sms_webhook_service import SMSWebhookService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/sms", tags=["sms"])


@router.post("/webhook/twilio")
async def twilio_sms_webhook(
    request: Request,
    db: Session = Depends(get_db),
    twilio_signature: str | None = Header(default=None, alias="X-Twilio-Signature"),
) -> Response:
    # Twilio signs every posted field, so validate against the whole form.
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    validate_twilio_request(request=request, params=params, signature=twilio_signature)

    from_number = params.get("From", "")
    body = params.get("Body", "")
    if not from_number:
        return Response(content=twiml_empty(), media_type="application/xml")

    try:
        reply = await run_in_threadpool(
            SMSWebhookService(db).handle_inbound, from_number, body, params.get("MessageSid")
        )
    except Exception:  # noqa: BLE001
        logger.exception("Inbound SMS handling failed")
        return Response(content=twiml_empty(), media_type="application/xml")

    return Response(content=twiml_message(reply), media_type="application/xml")
