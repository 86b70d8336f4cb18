from fastapi import APIRouter, Request, HTTPException
from fastapi.responses import Response

from agent_inbox.providers.twilio import validate_signature
from agent_inbox.services.dispatcher import apply_delivery_status
from agent_inbox.services.pipeline import InboundEvent
from agent_inbox.storage.db import session_scope
from agent_inbox.util.logger import get_logger

router = APIRouter(prefix="/sms", tags=["sms"])
log = get_logger("agent_inbox.webhooks")

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response/>'


def _twiml() -> Response:
    # providers retry on anything but 2xx, so past the signature check it is always this
    return Response(content=EMPTY_TWIML, media_type="text/xml")


def _signed_url(request: Request) -> str:
    base = request.app.state.settings.public_base_url
    if not base:
        return str(request.url)
    url = base + request.url.path
    if request.url.query:
        url += "?" + request.url.query
    return url


async def _verified_form(request: Request) -> dict:
    form = await request.form()
    params = {k: str(v) for k, v in form.items()}
    settings = request.app.state.settings
    if settings.validate_signatures:
        signature = request.headers.get("X-Twilio-Signature")
        if not validate_signature(settings.twilio_auth_token, _signed_url(request), params, signature):
            log.warning("webhook signature rejected path=%s", request.url.path)
            raise HTTPException(403, "Invalid signature")
    return params


@router.post("/inbound")
async def inbound(request: Request):
    params = await _verified_form(request)
    mo = request.app.state.provider.parse_inbound(params)
    event = InboundEvent(
        channel="sms",
        from_address=mo["from"],
        to_address=mo["to"],
        text=mo["text"],
        provider_id=mo["provider_id"],
    )
    outcome = await request.app.state.pipeline.handle(event)
    log.info("inbound handled id=%s outcome=%s", event.provider_id, outcome.status)
    return _twiml()


@router.post("/status")
async def status_callback(request: Request):
    params = await _verified_form(request)
    st = request.app.state.provider.parse_status(params)
    if not st["provider_id"] or not st["status"]:
        log.info("status callback ignored id=%s raw=%s", st["provider_id"], st["raw_status"])
        return _twiml()
    try:
        with session_scope(request.app.state.session_factory) as db:
            n = apply_delivery_status(db, st["provider_id"], st["status"])
        log.info("delivery status id=%s status=%s rows=%s", st["provider_id"], st["status"], n)
    except Exception:
        log.exception("status callback update failed id=%s", st["provider_id"])
    return _twiml()
