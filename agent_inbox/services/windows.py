from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import desc, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agent_inbox.storage.models import Conversation, ConversationTurn, utcnow
from agent_inbox.util.logger import get_logger

log = get_logger("agent_inbox.windows")

CREATE_ATTEMPTS = 3


class WindowManager:
    """
    Per (account, channel) conversation windows.

    A conversation stays active while its last activity is within
    `window_minutes`; expiry is only noticed when the next message
    arrives, at which point a fresh conversation is opened.
    """

    def __init__(self, window_minutes: int = 30):
        self.window = timedelta(minutes=window_minutes)

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) - self.window

    def find_active(self, db: Session, account_id: str, channel: str,
                    now: Optional[datetime] = None) -> Optional[Conversation]:
        return (
            db.query(Conversation)
              .filter(Conversation.account_id == account_id,
                      Conversation.channel == channel,
                      Conversation.last_active_at >= self.cutoff(now))
              .order_by(desc(Conversation.last_active_at), desc(Conversation.id))
              .first()
        )

    def _next_seq(self, db: Session, account_id: str, channel: str) -> int:
        current = (
            db.query(func.max(Conversation.seq))
              .filter(Conversation.account_id == account_id, Conversation.channel == channel)
              .scalar()
        )
        return (current or 0) + 1

    def open_or_extend(self, db: Session, account_id: str, channel: str,
                       now: Optional[datetime] = None) -> Tuple[Conversation, bool]:
        """Return (conversation, created). Extending refreshes last activity."""
        now = now or utcnow()
        for _ in range(CREATE_ATTEMPTS):
            convo = self.find_active(db, account_id, channel, now)
            if convo is not None:
                self.touch(convo, now)
                return convo, False

            convo = Conversation(
                account_id=account_id,
                channel=channel,
                seq=self._next_seq(db, account_id, channel),
                created_at=now,
                last_active_at=now,
            )
            try:
                with db.begin_nested():
                    db.add(convo)
            except IntegrityError:
                # a concurrent handler took this seq; its row is the active one
                log.info("conversation create race account=%s channel=%s", account_id, channel)
                continue
            log.info("conversation opened id=%s account=%s channel=%s seq=%s",
                     convo.id, account_id, channel, convo.seq)
            return convo, True
        raise RuntimeError(f"could not open a conversation for {account_id}/{channel}")

    def touch(self, convo: Conversation, now: Optional[datetime] = None):
        now = now or utcnow()
        if convo.last_active_at is None or convo.last_active_at < now:
            convo.last_active_at = now

    def append_turn(self, db: Session, convo: Conversation, role: str, content: str,
                    agent_run_id: Optional[str] = None,
                    now: Optional[datetime] = None) -> ConversationTurn:
        now = now or utcnow()
        turn = ConversationTurn(
            conversation_id=convo.id,
            role=role,
            content=content,
            channel=convo.channel,
            agent_run_id=agent_run_id,
            created_at=now,
        )
        db.add(turn)
        self.touch(convo, now)
        db.flush()
        return turn

    def history(self, db: Session, conversation_id: int, limit: int = 10,
                exclude_turn_id: Optional[int] = None) -> List[ConversationTurn]:
        """Most recent `limit` turns, oldest first."""
        q = db.query(ConversationTurn).filter(ConversationTurn.conversation_id == conversation_id)
        if exclude_turn_id is not None:
            q = q.filter(ConversationTurn.id != exclude_turn_id)
        rows = q.order_by(desc(ConversationTurn.created_at), desc(ConversationTurn.id)).limit(limit).all()
        return list(reversed(rows))

    def other_channel_turns(self, db: Session, account_id: str, exclude_channel: str,
                            now: Optional[datetime] = None, limit: int = 6) -> List[ConversationTurn]:
        """Recent turns on the account's other channels within the same window, oldest first."""
        rows = (
            db.query(ConversationTurn)
              .join(Conversation, Conversation.id == ConversationTurn.conversation_id)
              .filter(Conversation.account_id == account_id,
                      Conversation.channel != exclude_channel,
                      ConversationTurn.created_at >= self.cutoff(now))
              .order_by(desc(ConversationTurn.created_at), desc(ConversationTurn.id))
              .limit(limit)
              .all()
        )
        return list(reversed(rows))

    def turns_since(self, db: Session, account_id: str, since: Optional[datetime] = None,
                    channel: Optional[str] = None, limit: int = 100) -> List[ConversationTurn]:
        q = (
            db.query(ConversationTurn)
              .join(Conversation, Conversation.id == ConversationTurn.conversation_id)
              .filter(Conversation.account_id == account_id)
        )
        if since is not None:
            q = q.filter(ConversationTurn.created_at >= since)
        if channel:
            q = q.filter(ConversationTurn.channel == channel)
        rows = q.order_by(desc(ConversationTurn.created_at), desc(ConversationTurn.id)).limit(limit).all()
        return list(reversed(rows))
