from datetime import timedelta
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from agent_inbox.routers.deps import get_db, current_account
from agent_inbox.services.pipeline import InboundEvent
from agent_inbox.storage.models import utcnow

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("")
async def chat(payload: dict, request: Request, account_id: str = Depends(current_account)):
    """Web channel: same pipeline as SMS, reply comes back in the response."""
    text = (payload.get("message") or payload.get("text") or "").strip()
    if not text:
        raise HTTPException(400, "Missing message")
    event = InboundEvent(
        channel="web",
        from_address=account_id,
        to_address="",
        text=text,
        provider_id=f"web-{uuid4().hex}",
    )
    outcome = await request.app.state.pipeline.handle(event)
    return {
        "status": outcome.status,
        "reply": outcome.reply,
        "run_id": outcome.run_id,
        "conversation_id": outcome.conversation_id,
    }


@router.get("/history")
def history(
    request: Request,
    minutes: Optional[int] = Query(None, ge=1),
    channel: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    account_id: str = Depends(current_account),
    db: Session = Depends(get_db),
):
    """Turns across channels, oldest first; defaults to the current window."""
    windows = request.app.state.windows
    since = utcnow() - timedelta(minutes=minutes) if minutes else windows.cutoff()
    turns = windows.turns_since(db, account_id, since=since, channel=channel, limit=limit)
    return {
        "turns": [
            {
                "role": t.role,
                "content": t.content,
                "channel": t.channel,
                "conversation_id": t.conversation_id,
                "agent_run_id": t.agent_run_id,
                "created_at": t.created_at.isoformat() if t.created_at else None,
            }
            for t in turns
        ]
    }
