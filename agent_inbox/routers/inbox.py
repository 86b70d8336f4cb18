from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from agent_inbox.routers.deps import get_db, current_account
from agent_inbox.services import threads

router = APIRouter(prefix="/api/inbox", tags=["inbox"])


def _or_404(fn, *args):
    try:
        return fn(*args)
    except LookupError as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))


@router.get("/threads")
def list_threads(
    status: str = Query("open"),
    channel: Optional[str] = Query(None),
    unread: bool = Query(False),
    cursor: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    account_id: str = Depends(current_account),
    db: Session = Depends(get_db),
):
    try:
        rows, next_cursor = threads.list_threads(db, account_id, status=status, channel=channel,
                                                 unread_only=unread, cursor=cursor, limit=limit)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {"threads": [threads.thread_to_dict(t) for t in rows], "next_cursor": next_cursor}


@router.get("/unread-count")
def unread_count(account_id: str = Depends(current_account), db: Session = Depends(get_db)):
    return {"count": threads.unread_count(db, account_id)}


@router.get("/threads/{thread_id}")
def thread_detail(thread_id: int, limit: int = Query(100, ge=1, le=500),
                  account_id: str = Depends(current_account), db: Session = Depends(get_db)):
    t, msgs = _or_404(threads.thread_detail, db, account_id, thread_id, limit)
    return {"thread": threads.thread_to_dict(t), "messages": [threads.message_to_dict(m) for m in msgs]}


@router.post("/threads/{thread_id}/read")
def mark_read(thread_id: int, account_id: str = Depends(current_account), db: Session = Depends(get_db)):
    return threads.thread_to_dict(_or_404(threads.mark_read, db, account_id, thread_id))


@router.post("/threads/{thread_id}/unread")
def mark_unread(thread_id: int, account_id: str = Depends(current_account), db: Session = Depends(get_db)):
    return threads.thread_to_dict(_or_404(threads.mark_unread, db, account_id, thread_id))


@router.post("/threads/{thread_id}/archive")
def archive(thread_id: int, account_id: str = Depends(current_account), db: Session = Depends(get_db)):
    return threads.thread_to_dict(_or_404(threads.archive, db, account_id, thread_id))


@router.post("/threads/{thread_id}/unarchive")
def unarchive(thread_id: int, account_id: str = Depends(current_account), db: Session = Depends(get_db)):
    return threads.thread_to_dict(_or_404(threads.unarchive, db, account_id, thread_id))


@router.post("/threads/{thread_id}/snooze")
def snooze(thread_id: int, payload: dict, account_id: str = Depends(current_account),
           db: Session = Depends(get_db)):
    """payload: {"until": "2026-01-01T09:00:00"} (UTC)"""
    raw = payload.get("until")
    if not raw:
        raise HTTPException(400, "Missing until")
    try:
        until = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(400, "until must be an ISO-8601 timestamp")
    if until.tzinfo is not None:
        until = until.replace(tzinfo=None) - until.utcoffset()
    return threads.thread_to_dict(_or_404(threads.snooze, db, account_id, thread_id, until))


@router.post("/threads/{thread_id}/unsnooze")
def unsnooze(thread_id: int, account_id: str = Depends(current_account), db: Session = Depends(get_db)):
    return threads.thread_to_dict(_or_404(threads.unsnooze, db, account_id, thread_id))


@router.post("/threads/{thread_id}/assign")
def assign(thread_id: int, payload: dict, account_id: str = Depends(current_account),
           db: Session = Depends(get_db)):
    """payload: {"assignee": "<account id>"} or {"assignee": null} to unassign"""
    if "assignee" not in payload:
        raise HTTPException(400, "Missing assignee")
    return threads.thread_to_dict(_or_404(threads.assign, db, account_id, thread_id, payload["assignee"]))


@router.post("/threads/{thread_id}/notes")
def add_note(thread_id: int, payload: dict, account_id: str = Depends(current_account),
             db: Session = Depends(get_db)):
    """payload: {"text": "called back, waiting on quote"}"""
    note = _or_404(threads.add_internal_note, db, account_id, thread_id, str(payload.get("text") or ""))
    return threads.message_to_dict(note)
