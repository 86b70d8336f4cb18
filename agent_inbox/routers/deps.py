from typing import Optional

from fastapi import Header, HTTPException, Request

from agent_inbox.storage.db import session_scope


def get_db(request: Request):
    """Request-scoped session; commits when the endpoint returns cleanly."""
    with session_scope(request.app.state.session_factory) as db:
        yield db


def current_account(x_account_id: Optional[str] = Header(None)) -> str:
    # auth lives upstream; it forwards the caller's account id
    account_id = (x_account_id or "").strip()
    if not account_id:
        raise HTTPException(401, "Missing X-Account-Id")
    return account_id
