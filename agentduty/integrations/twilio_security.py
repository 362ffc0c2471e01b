import base64
import hashlib
import hmac
from collections.abc import Mapping
from urllib.parse import urlparse

from fastapi import HTTPException, Request

from agentduty.core.config import get_settings

TWILIO_SIGNATURE_HEADER = "X-Twilio-Signature"


def public_url(request: Request) -> str:
    """Rebuild the URL Twilio called, honouring reverse-proxy forwarding headers."""
    parsed = urlparse(str(request.url))
    scheme = request.headers.get("x-forwarded-proto", parsed.scheme).split(",")[0].strip()
    forwarded_host = request.headers.get("x-forwarded-host")
    if forwarded_host:
        host_port = forwarded_host.split(",")[0].strip()
    else:
        host = parsed.hostname or ""
        port = parsed.port
        # Twilio signs the full URL excluding default ports.
        include_port = port and not ((scheme == "https" and port == 443) or (scheme == "http" and port == 80))
        host_port = f"{host}:{port}" if include_port else host
    query = f"?{parsed.query}" if parsed.query else ""
    return f"{scheme}://{host_port}{parsed.path or ''}{query}"


def compute_twilio_signature(url: str, params: Mapping[str, str], auth_token: str) -> str:
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("utf-8")


def validate_twilio_request(request: Request, params: Mapping[str, str], signature: str | None) -> None:
    settings = get_settings()
    if not settings.twilio_validate_signatures:
        return

    if not settings.twilio_auth_token:
        raise HTTPException(status_code=500, detail="Twilio signature validation enabled without auth token")

    if not signature:
        raise HTTPException(status_code=401, detail="Missing Twilio signature")

    expected = compute_twilio_signature(public_url(request), params, settings.twilio_auth_token)
    if not hmac.compare_digest(signature, expected):
        raise HTTPException(status_code=401, detail="Invalid Twilio signature")
