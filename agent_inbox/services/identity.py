import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from agent_inbox.storage.models import AccountPhone, PhoneVerification, utcnow
from agent_inbox.util.phones import normalize_phone
from agent_inbox.util.logger import get_logger

log = get_logger("agent_inbox.identity")

PHONE_CHANNELS = ("sms", "voice")

CODE_TTL = timedelta(minutes=5)
MAX_CODE_ATTEMPTS = 5

# settings exposed over the API; everything else on AccountPhone is internal
PREFERENCE_FIELDS = (
    "autopilot_enabled",
    "digest_enabled",
    "overdue_reminders_enabled",
    "referral_alerts_enabled",
    "digest_time",
    "quiet_start",
    "quiet_end",
)


@dataclass(frozen=True)
class ResolvedAccount:
    account_id: str
    address: str
    autopilot_enabled: bool = True


# resolve() returns this when nobody owns the address
UNKNOWN = None


def resolve(db: Session, channel: str, address: str) -> Optional[ResolvedAccount]:
    """
    Map an inbound (channel, address) to the owning account.

    SMS/voice: exact match on a verified phone link after E.164 normalization.
    Web: the address already is the authenticated account id.
    Anything else is UNKNOWN until a resolver exists for it.
    """
    if not address:
        return UNKNOWN
    if channel == "web":
        return ResolvedAccount(account_id=address, address=address)
    if channel not in PHONE_CHANNELS:
        return UNKNOWN

    phone = normalize_phone(address)
    link = (
        db.query(AccountPhone)
          .filter(AccountPhone.phone_number == phone, AccountPhone.verified.is_(True))
          .first()
    )
    if not link:
        return UNKNOWN
    return ResolvedAccount(
        account_id=link.account_id,
        address=link.phone_number,
        autopilot_enabled=bool(link.autopilot_enabled),
    )


def _hash_code(account_id: str, phone: str, code: str) -> str:
    return hashlib.sha256(f"{account_id}:{phone}:{code}".encode()).hexdigest()


def _dialable(phone_number: str) -> str:
    phone = normalize_phone(phone_number)
    if not phone.startswith("+"):
        raise ValueError(f"not a dialable phone number: {phone_number!r}")
    return phone


def _ensure_unclaimed(db: Session, account_id: str, phone: str):
    taken = (
        db.query(AccountPhone)
          .filter(AccountPhone.phone_number == phone, AccountPhone.account_id != account_id)
          .first()
    )
    if taken:
        raise ValueError("phone number is already linked to another account")


def link_phone(db: Session, account_id: str, phone_number: str, verified: bool = True) -> AccountPhone:
    """
    Upsert the account's phone link; re-verification overwrites the number.
    Callers outside this module go through confirm_verification.
    """
    phone = _dialable(phone_number)
    _ensure_unclaimed(db, account_id, phone)

    link = db.query(AccountPhone).filter_by(account_id=account_id).first()
    if link is None:
        link = AccountPhone(account_id=account_id, phone_number=phone)
        db.add(link)
    link.phone_number = phone
    link.verified = verified
    link.autopilot_enabled = True
    link.updated_at = utcnow()
    db.flush()
    log.info("phone linked account=%s phone=%s verified=%s", account_id, phone, verified)
    return link


def start_verification(db: Session, account_id: str, phone_number: str,
                       now: Optional[datetime] = None) -> Tuple[str, str]:
    """
    Issue a fresh six-digit code for `phone_number`, replacing any pending one.
    Returns (normalized phone, plain code); only the hash is stored, and the
    caller is responsible for texting the code to the number.
    """
    now = now or utcnow()
    phone = _dialable(phone_number)
    _ensure_unclaimed(db, account_id, phone)

    code = f"{secrets.randbelow(900000) + 100000}"
    pending = db.query(PhoneVerification).filter_by(account_id=account_id).first()
    if pending is None:
        pending = PhoneVerification(account_id=account_id)
        db.add(pending)
    pending.phone_number = phone
    pending.code_hash = _hash_code(account_id, phone, code)
    pending.attempts = 0
    pending.expires_at = now + CODE_TTL
    db.flush()
    log.info("verification code issued account=%s phone=%s", account_id, phone)
    return phone, code


def confirm_verification(db: Session, account_id: str, phone_number: str, code: str,
                         now: Optional[datetime] = None) -> AccountPhone:
    """
    Check a code issued by start_verification and, on a match, create the
    verified phone link. Any failure raises ValueError; a wrong guess is
    counted (flushed, not committed) before raising.
    """
    now = now or utcnow()
    phone = _dialable(phone_number)
    pending = db.query(PhoneVerification).filter_by(account_id=account_id).first()
    if pending is None or pending.phone_number != phone:
        raise ValueError("no pending verification for this number")
    if pending.expires_at <= now:
        raise ValueError("verification code expired")
    if pending.attempts >= MAX_CODE_ATTEMPTS:
        raise ValueError("too many attempts, request a new code")

    expected = _hash_code(account_id, phone, str(code).strip())
    if not hmac.compare_digest(pending.code_hash, expected):
        pending.attempts += 1
        db.flush()
        log.info("verification code rejected account=%s attempts=%s", account_id, pending.attempts)
        raise ValueError("Invalid verification code")

    db.delete(pending)
    return link_phone(db, account_id, phone, verified=True)


def _prefs(link: AccountPhone) -> dict:
    out = {k: getattr(link, k) for k in PREFERENCE_FIELDS}
    out["phone_number"] = link.phone_number
    out["verified"] = bool(link.verified)
    return out


def get_preferences(db: Session, account_id: str) -> Optional[dict]:
    link = db.query(AccountPhone).filter_by(account_id=account_id).first()
    return _prefs(link) if link else None


def update_preferences(db: Session, account_id: str, **fields) -> dict:
    unknown = set(fields) - set(PREFERENCE_FIELDS)
    if unknown:
        raise ValueError(f"unknown preference(s): {', '.join(sorted(unknown))}")
    link = db.query(AccountPhone).filter_by(account_id=account_id).first()
    if link is None:
        raise LookupError(f"no phone linked for account {account_id}")
    for k, v in fields.items():
        if v is not None:
            setattr(link, k, v)
    link.updated_at = utcnow()
    db.flush()
    return _prefs(link)
