from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import or_

from agent_inbox.providers.base import FINAL_STATUSES
from agent_inbox.storage.db import session_scope
from agent_inbox.storage.models import Conversation, SmsMessage
from agent_inbox.services import threads
from agent_inbox.services.windows import WindowManager
from agent_inbox.util.logger import get_logger

log = get_logger("agent_inbox.dispatcher")

# per-channel outbound ceilings; channels not listed are unbounded
CHANNEL_LIMITS: Dict[str, int] = {"sms": 1500}
ELLIPSIS = "..."


def truncate(text: str, limit: Optional[int]) -> str:
    if limit is None or len(text) <= limit:
        return text
    return text[: limit - len(ELLIPSIS)] + ELLIPSIS


@dataclass
class DispatchResult:
    text: str
    provider_id: Optional[str]
    turn_id: int


class OutboundDispatcher:
    def __init__(self, provider, session_factory, windows: WindowManager,
                 limits: Optional[Dict[str, int]] = None, from_number: str = ""):
        self.provider = provider
        self.session_factory = session_factory
        self.windows = windows
        self.limits = dict(CHANNEL_LIMITS if limits is None else limits)
        self.from_number = from_number

    def limit_for(self, channel: str) -> Optional[int]:
        return self.limits.get(channel)

    async def send_notice(self, channel: str, to: str, text: str, userref: Optional[str] = None) -> Optional[str]:
        """Fixed replies (onboarding, deferral, apology): sent, not persisted."""
        if channel != "sms":
            return None
        return await self.provider.send(to, truncate(text, self.limit_for(channel)), userref=userref)

    async def send_reply(self, *, account_id: str, conversation_id: int, channel: str, to: str,
                         text: str, agent_run_id: Optional[str] = None, from_address: str = "",
                         now: Optional[datetime] = None) -> DispatchResult:
        """
        Truncate, hand to the transport, then write the assistant turn and the
        outbound raw record in one transaction. A transport error propagates
        before anything is written.
        """
        body = truncate(text, self.limit_for(channel))
        sender = from_address or self.from_number

        provider_id = None
        if channel == "sms":
            provider_id = await self.provider.send(to, body, userref=agent_run_id or "reply")

        with session_scope(self.session_factory) as db:
            convo = db.get(Conversation, conversation_id)
            if convo is None:
                raise LookupError(f"conversation {conversation_id} vanished before reply")
            turn = self.windows.append_turn(db, convo, "assistant", body, agent_run_id=agent_run_id, now=now)
            if channel == "sms":
                db.add(SmsMessage(
                    account_id=account_id,
                    direction="outbound",
                    from_address=sender,
                    to_address=to,
                    body=body,
                    provider_sid=provider_id,
                    status="sent",
                    agent_run_id=agent_run_id,
                ))
            db.flush()
            turn_id = turn.id

        if channel != "web":
            self._record_inbox(account_id, channel, sender, to, body, provider_id, agent_run_id, now)

        log.info("reply dispatched account=%s channel=%s chars=%s provider_id=%s run=%s",
                 account_id, channel, len(body), provider_id, agent_run_id)
        return DispatchResult(text=body, provider_id=provider_id, turn_id=turn_id)

    def _record_inbox(self, account_id, channel, sender, to, body, provider_id, agent_run_id, now):
        try:
            with session_scope(self.session_factory) as db:
                thread, _ = threads.find_or_create_thread(db, channel, to, "outbound", account_id)
                threads.record_message(
                    db, thread.id, "outbound", provider_id, body, channel,
                    from_address=sender, to_address=to, status="sent",
                    agent_run_id=agent_run_id, occurred_at=now,
                )
        except Exception:
            # secondary index only; the reply is already sent and stored
            log.exception("inbox outbound record failed account=%s provider_id=%s", account_id, provider_id)


def apply_delivery_status(db, provider_sid: str, status: str) -> int:
    """
    Delivery callback: move the outbound record (and its inbox copy) to
    `status`. Records already delivered or failed are left alone, so a late
    callback cannot walk a message backwards.
    """
    n = (
        db.query(SmsMessage)
          .filter(SmsMessage.provider_sid == provider_sid,
                  or_(SmsMessage.status.is_(None), SmsMessage.status.notin_(FINAL_STATUSES)))
          .update({SmsMessage.status: status}, synchronize_session=False)
    )
    threads.update_message_status(db, "sms", provider_sid, status)
    return n
