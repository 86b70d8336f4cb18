from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from agent_inbox.providers.base import ProviderError
from agent_inbox.routers.deps import get_db, current_account
from agent_inbox.services import identity
from agent_inbox.storage.db import session_scope
from agent_inbox.util.logger import get_logger

router = APIRouter(prefix="/api", tags=["account"])
log = get_logger("agent_inbox.account")

VERIFY_TEXT = "Your verification code is: {code}"

_BOOL_FIELDS = ("autopilot_enabled", "digest_enabled", "overdue_reminders_enabled", "referral_alerts_enabled")
_TIME_FIELDS = ("digest_time", "quiet_start", "quiet_end")


def _hhmm(value) -> str:
    s = str(value or "").strip()
    parts = s.split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ValueError(f"expected HH:MM, got {value!r}")
    h, m = int(parts[0]), int(parts[1])
    if not (0 <= h < 24 and 0 <= m < 60):
        raise ValueError(f"expected HH:MM, got {value!r}")
    return f"{h:02d}:{m:02d}"


@router.post("/phone/send-code")
async def send_code(payload: dict, request: Request, account_id: str = Depends(current_account)):
    """payload: {"phone_number": "+15551234567"}; texts a one-time code to the number"""
    phone = payload.get("phone_number") or payload.get("phone")
    if not phone or not isinstance(phone, str):
        raise HTTPException(400, "Phone number is required")
    try:
        with session_scope(request.app.state.session_factory) as db:
            normalized, code = identity.start_verification(db, account_id, phone)
    except ValueError as e:
        raise HTTPException(400, str(e))
    try:
        await request.app.state.provider.send(normalized, VERIFY_TEXT.format(code=code), userref="verify")
    except ProviderError:
        log.exception("verification code send failed account=%s", account_id)
        raise HTTPException(502, "Failed to send code. Please try again later.")
    return {"sent": True, "phone_number": normalized}


@router.post("/phone/verify-code")
def verify_code(payload: dict, account_id: str = Depends(current_account), db: Session = Depends(get_db)):
    """payload: {"phone_number": "...", "code": "123456"}; links the number on a match"""
    phone = payload.get("phone_number") or payload.get("phone")
    code = payload.get("code")
    if not phone or not code:
        raise HTTPException(400, "Phone number and code are required")
    try:
        link = identity.confirm_verification(db, account_id, phone, str(code))
    except ValueError as e:
        # keep the counted attempt even though the request fails
        db.commit()
        raise HTTPException(400, str(e))
    return {"verified": True, "phone_number": link.phone_number}


@router.get("/settings/autopilot")
def get_autopilot(account_id: str = Depends(current_account), db: Session = Depends(get_db)):
    prefs = identity.get_preferences(db, account_id)
    if prefs is None:
        raise HTTPException(404, "No phone linked")
    return prefs


@router.put("/settings/autopilot")
def put_autopilot(payload: dict, account_id: str = Depends(current_account), db: Session = Depends(get_db)):
    fields = {}
    try:
        for k, v in payload.items():
            if k in _BOOL_FIELDS:
                if not isinstance(v, bool):
                    raise ValueError(f"{k} must be true or false")
                fields[k] = v
            elif k in _TIME_FIELDS:
                fields[k] = _hhmm(v)
            else:
                raise ValueError(f"unknown setting: {k}")
        return identity.update_preferences(db, account_id, **fields)
    except ValueError as e:
        raise HTTPException(400, str(e))
    except LookupError as e:
        raise HTTPException(404, str(e))


@router.get("/usage")
def usage(request: Request, account_id: str = Depends(current_account), db: Session = Depends(get_db)):
    governor = request.app.state.governor
    stats = governor.usage_stats(db)
    check = governor.check_rate_limit(db, account_id)
    stats["account"] = {
        "allowed": check.allowed,
        "reason": check.reason,
        "retry_after": check.retry_after,
        "usage": check.usage,
    }
    return stats
