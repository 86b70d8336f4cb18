"""
Inbox thread store.

One thread per (channel, normalized counterparty address), with an
idempotent message log keyed on the provider's message id. This is a
secondary index over the conversation data: callers in the inbound path
treat failures here as non-fatal.
"""
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import and_, or_, desc, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agent_inbox.providers.base import FINAL_STATUSES
from agent_inbox.storage.models import Contact, InboxThread, InboxMessage, utcnow
from agent_inbox.util.phones import normalize_address
from agent_inbox.util.logger import get_logger

log = get_logger("agent_inbox.threads")

PREVIEW_CHARS = 200
STATUSES = ("open", "archived", "snoozed")
NOTE_CHANNEL = "internal"


# -----------------------------------------------------------------------------
# Writes used by the inbound/outbound pipeline
# -----------------------------------------------------------------------------
def _match_contact(db: Session, channel: str, address: str, account_id: Optional[str]) -> Optional[Contact]:
    q = db.query(Contact)
    if account_id:
        q = q.filter(Contact.owner_account_id == account_id)
    if channel == "email" or "@" in address:
        q = q.filter(func.lower(Contact.email) == address)
    elif address.startswith("+"):
        q = q.filter(Contact.phone == address)
    else:
        return None
    return q.order_by(Contact.id).first()


def find_or_create_thread(db: Session, channel: str, address: str, direction: str,
                          account_id: Optional[str] = None) -> Tuple[InboxThread, bool]:
    """Return (thread, is_new) for the normalized counterparty address."""
    addr = normalize_address(channel, address)
    if not addr:
        raise ValueError("thread address is empty")

    contact = _match_contact(db, channel, addr, account_id)
    thread = db.query(InboxThread).filter_by(channel=channel, address=addr).first()
    if thread is not None:
        if account_id and not thread.account_id:
            thread.account_id = account_id
        if contact and not thread.contact_id:
            thread.contact_id = contact.id
        return thread, False

    thread = InboxThread(
        channel=channel,
        address=addr,
        contact_id=contact.id if contact else None,
        account_id=account_id,
        assigned_account_id=account_id,
        status="open",
        is_unread=(direction == "inbound"),
        last_message_at=utcnow(),
        last_message_channel=channel,
    )
    try:
        with db.begin_nested():
            db.add(thread)
    except IntegrityError:
        # lost a create race; the winner's row is the thread
        winner = db.query(InboxThread).filter_by(channel=channel, address=addr).one()
        return winner, False
    log.info("inbox thread created id=%s channel=%s direction=%s", thread.id, channel, direction)
    return thread, True


def record_message(db: Session, thread_id: int, direction: str, provider_message_id: Optional[str],
                   body: str, channel: str, from_address: str = "", to_address: str = "",
                   status: Optional[str] = None, agent_run_id: Optional[str] = None,
                   occurred_at: Optional[datetime] = None) -> Tuple[InboxMessage, bool]:
    """
    Append a message to a thread. Returns (message, created); a repeat of
    (channel, provider_message_id) returns the stored row and changes nothing.
    """
    if provider_message_id:
        existing = (
            db.query(InboxMessage)
              .filter_by(channel=channel, provider_message_id=provider_message_id)
              .first()
        )
        if existing is not None:
            return existing, False

    thread = db.get(InboxThread, thread_id)
    if thread is None:
        raise LookupError(f"inbox thread {thread_id} not found")

    when = occurred_at or utcnow()
    msg = InboxMessage(
        thread_id=thread_id,
        channel=channel,
        direction=direction,
        status=status or ("received" if direction == "inbound" else "sent"),
        from_address=from_address,
        to_address=to_address,
        body=body,
        provider_message_id=provider_message_id,
        agent_run_id=agent_run_id,
        occurred_at=when,
    )
    try:
        with db.begin_nested():
            db.add(msg)
    except IntegrityError:
        existing = (
            db.query(InboxMessage)
              .filter_by(channel=channel, provider_message_id=provider_message_id)
              .one()
        )
        return existing, False

    thread.last_message_at = when
    thread.last_message_preview = (body or "")[:PREVIEW_CHARS]
    thread.last_message_channel = channel
    if direction == "inbound":
        if thread.status in ("archived", "snoozed"):
            thread.status = "open"
            thread.snoozed_until = None
        thread.is_unread = True
    else:
        thread.is_unread = False
    db.flush()
    return msg, True


def update_message_status(db: Session, channel: str, provider_message_id: str, status: str) -> int:
    return (
        db.query(InboxMessage)
          .filter_by(channel=channel, provider_message_id=provider_message_id)
          .filter(or_(InboxMessage.status.is_(None), InboxMessage.status.notin_(FINAL_STATUSES)))
          .update({InboxMessage.status: status}, synchronize_session=False)
    )


# -----------------------------------------------------------------------------
# Reads + thread actions (inbox API)
# -----------------------------------------------------------------------------
def _visible_to(account_id: str):
    return or_(
        InboxThread.account_id == account_id,
        InboxThread.assigned_account_id == account_id,
        and_(InboxThread.account_id.is_(None), InboxThread.assigned_account_id.is_(None)),
    )


def _wake_snoozed(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    return (
        db.query(InboxThread)
          .filter(InboxThread.status == "snoozed", InboxThread.snoozed_until <= now)
          .update({InboxThread.status: "open", InboxThread.snoozed_until: None},
                  synchronize_session=False)
    )


def _get_visible(db: Session, account_id: str, thread_id: int) -> InboxThread:
    t = (
        db.query(InboxThread)
          .filter(InboxThread.id == thread_id, _visible_to(account_id))
          .first()
    )
    if t is None:
        raise LookupError(f"inbox thread {thread_id} not found")
    return t


def _encode_cursor(t: InboxThread) -> str:
    return f"{t.last_message_at.isoformat()}|{t.id}"


def _decode_cursor(cursor: str) -> Tuple[datetime, int]:
    try:
        ts, tid = cursor.rsplit("|", 1)
        return datetime.fromisoformat(ts), int(tid)
    except ValueError as e:
        raise ValueError(f"bad cursor: {cursor!r}") from e


def list_threads(db: Session, account_id: str, status: str = "open", channel: Optional[str] = None,
                 unread_only: bool = False, cursor: Optional[str] = None,
                 limit: int = 50) -> Tuple[List[InboxThread], Optional[str]]:
    """Newest activity first. Returns (threads, next_cursor)."""
    if status not in STATUSES:
        raise ValueError(f"unknown status: {status}")
    _wake_snoozed(db)

    q = db.query(InboxThread).filter(_visible_to(account_id), InboxThread.status == status)
    if channel:
        q = q.filter(InboxThread.channel == channel)
    if unread_only:
        q = q.filter(InboxThread.is_unread.is_(True))
    if cursor:
        ts, tid = _decode_cursor(cursor)
        q = q.filter(or_(
            InboxThread.last_message_at < ts,
            and_(InboxThread.last_message_at == ts, InboxThread.id < tid),
        ))
    rows = (
        q.order_by(desc(InboxThread.last_message_at), desc(InboxThread.id))
         .limit(limit + 1)
         .all()
    )
    next_cursor = _encode_cursor(rows[limit - 1]) if len(rows) > limit else None
    return rows[:limit], next_cursor


def thread_detail(db: Session, account_id: str, thread_id: int, limit: int = 100) -> Tuple[InboxThread, List[InboxMessage]]:
    t = _get_visible(db, account_id, thread_id)
    msgs = (
        db.query(InboxMessage)
          .filter(InboxMessage.thread_id == t.id)
          .order_by(desc(InboxMessage.occurred_at), desc(InboxMessage.id))
          .limit(limit)
          .all()
    )
    return t, list(reversed(msgs))


def unread_count(db: Session, account_id: str) -> int:
    _wake_snoozed(db)
    return (
        db.query(func.count(InboxThread.id))
          .filter(_visible_to(account_id),
                  InboxThread.status == "open",
                  InboxThread.is_unread.is_(True))
          .scalar()
    ) or 0


def mark_read(db: Session, account_id: str, thread_id: int) -> InboxThread:
    t = _get_visible(db, account_id, thread_id)
    t.is_unread = False
    db.flush()
    return t


def mark_unread(db: Session, account_id: str, thread_id: int) -> InboxThread:
    t = _get_visible(db, account_id, thread_id)
    t.is_unread = True
    db.flush()
    return t


def archive(db: Session, account_id: str, thread_id: int) -> InboxThread:
    t = _get_visible(db, account_id, thread_id)
    t.status = "archived"
    t.snoozed_until = None
    db.flush()
    return t


def unarchive(db: Session, account_id: str, thread_id: int) -> InboxThread:
    t = _get_visible(db, account_id, thread_id)
    t.status = "open"
    db.flush()
    return t


def snooze(db: Session, account_id: str, thread_id: int, until: datetime) -> InboxThread:
    if until <= utcnow():
        raise ValueError("snooze time must be in the future")
    t = _get_visible(db, account_id, thread_id)
    t.status = "snoozed"
    t.snoozed_until = until
    db.flush()
    return t


def unsnooze(db: Session, account_id: str, thread_id: int) -> InboxThread:
    t = _get_visible(db, account_id, thread_id)
    t.status = "open"
    t.snoozed_until = None
    db.flush()
    return t


def assign(db: Session, account_id: str, thread_id: int, assignee: Optional[str]) -> InboxThread:
    t = _get_visible(db, account_id, thread_id)
    t.assigned_account_id = assignee
    db.flush()
    return t


def add_internal_note(db: Session, account_id: str, thread_id: int, text: str) -> InboxMessage:
    """
    Teammate-only note on a thread. Stored in the message log on the
    `internal` channel; never sent, and the thread's preview and unread
    state are left as they were.
    """
    text = (text or "").strip()
    if not text:
        raise ValueError("note text is empty")
    t = _get_visible(db, account_id, thread_id)
    note = InboxMessage(
        thread_id=t.id,
        channel=NOTE_CHANNEL,
        direction="outbound",
        status="note",
        from_address=account_id,
        to_address=NOTE_CHANNEL,
        body=text,
        provider_message_id=None,
        occurred_at=utcnow(),
    )
    db.add(note)
    db.flush()
    log.info("internal note added thread=%s account=%s", t.id, account_id)
    return note


def recent_messages(db: Session, account_id: str, since: datetime, limit: int = 200) -> List[InboxMessage]:
    """Read-only feed for scheduled consumers (digests, reminders)."""
    return (
        db.query(InboxMessage)
          .join(InboxThread, InboxThread.id == InboxMessage.thread_id)
          .filter(_visible_to(account_id), InboxMessage.occurred_at >= since)
          .order_by(InboxMessage.occurred_at.asc(), InboxMessage.id.asc())
          .limit(limit)
          .all()
    )


# -----------------------------------------------------------------------------
# Serialization
# -----------------------------------------------------------------------------
def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def thread_to_dict(t: InboxThread) -> dict:
    return {
        "id": t.id,
        "channel": t.channel,
        "address": t.address,
        "contact_id": t.contact_id,
        "account_id": t.account_id,
        "assigned_account_id": t.assigned_account_id,
        "status": t.status,
        "snoozed_until": _iso(t.snoozed_until),
        "last_message_at": _iso(t.last_message_at),
        "last_message_preview": t.last_message_preview,
        "last_message_channel": t.last_message_channel,
        "is_unread": bool(t.is_unread),
    }


def message_to_dict(m: InboxMessage) -> dict:
    return {
        "id": m.id,
        "thread_id": m.thread_id,
        "channel": m.channel,
        "direction": m.direction,
        "status": m.status,
        "from": m.from_address,
        "to": m.to_address,
        "body": m.body,
        "provider_message_id": m.provider_message_id,
        "agent_run_id": m.agent_run_id,
        "occurred_at": _iso(m.occurred_at),
    }
