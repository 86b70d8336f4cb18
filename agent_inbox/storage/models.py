from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, Text, Float,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship

from .db import Base


def utcnow() -> datetime:
    # naive UTC; sqlite drops tzinfo anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AccountPhone(Base):
    __tablename__ = "account_phones"
    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=False, unique=True)
    phone_number = Column(String, nullable=False, unique=True)   # E.164
    verified = Column(Boolean, default=False, nullable=False)
    autopilot_enabled = Column(Boolean, default=True, nullable=False)
    digest_enabled = Column(Boolean, default=True, nullable=False)
    overdue_reminders_enabled = Column(Boolean, default=True, nullable=False)
    referral_alerts_enabled = Column(Boolean, default=True, nullable=False)
    digest_time = Column(String, default="08:00")
    quiet_start = Column(String, default="21:00")
    quiet_end = Column(String, default="08:00")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class PhoneVerification(Base):
    __tablename__ = "phone_verifications"
    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=False, unique=True)    # one pending code per account
    phone_number = Column(String, nullable=False)               # E.164
    code_hash = Column(String, nullable=False)                  # sha256 hex, never the code
    attempts = Column(Integer, default=0, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class Contact(Base):
    __tablename__ = "contacts"
    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_account_id = Column(String, index=True)
    name = Column(String)
    email = Column(String, index=True)      # lower-cased
    phone = Column(String, index=True)      # E.164
    created_at = Column(DateTime, default=utcnow)


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        # one writer wins when two inbound events race to open a window
        UniqueConstraint("account_id", "channel", "seq", name="uq_conversation_seq"),
        Index("ix_conversation_active", "account_id", "channel", "last_active_at"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=False)
    channel = Column(String, nullable=False)       # sms | web | email | voice
    seq = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    last_active_at = Column(DateTime, default=utcnow, nullable=False)

    turns = relationship("ConversationTurn", back_populates="conversation",
                         order_by="ConversationTurn.id")


class ConversationTurn(Base):
    __tablename__ = "conversation_turns"
    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    role = Column(String, nullable=False)          # user | assistant
    content = Column(Text, nullable=False)
    channel = Column(String, nullable=False)
    agent_run_id = Column(String)
    created_at = Column(DateTime, default=utcnow, index=True)

    conversation = relationship("Conversation", back_populates="turns")


class SmsMessage(Base):
    __tablename__ = "sms_messages"
    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, index=True)
    direction = Column(String, nullable=False)     # inbound | outbound
    from_address = Column(String)
    to_address = Column(String)
    body = Column(Text)
    provider_sid = Column(String, unique=True)     # MessageSid; dedup key for provider retries
    status = Column(String)                        # received/sent/delivered/failed
    agent_run_id = Column(String)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class InboxThread(Base):
    __tablename__ = "inbox_threads"
    __table_args__ = (
        UniqueConstraint("channel", "address", name="uq_inbox_thread_address"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    channel = Column(String, nullable=False)
    address = Column(String, nullable=False)       # normalized
    contact_id = Column(Integer, ForeignKey("contacts.id"))
    account_id = Column(String, index=True)
    assigned_account_id = Column(String, index=True)
    status = Column(String, default="open", nullable=False)   # open | archived | snoozed
    snoozed_until = Column(DateTime)
    last_message_at = Column(DateTime)
    last_message_preview = Column(String(200))
    last_message_channel = Column(String)
    is_unread = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    messages = relationship("InboxMessage", back_populates="thread",
                            order_by="InboxMessage.id")


class InboxMessage(Base):
    __tablename__ = "inbox_messages"
    __table_args__ = (
        UniqueConstraint("channel", "provider_message_id", name="uq_inbox_message_provider_id"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    thread_id = Column(Integer, ForeignKey("inbox_threads.id"), nullable=False, index=True)
    channel = Column(String, nullable=False)
    direction = Column(String, nullable=False)     # inbound | outbound
    status = Column(String)
    from_address = Column(String)
    to_address = Column(String)
    body = Column(Text)
    provider_message_id = Column(String)
    agent_run_id = Column(String)
    occurred_at = Column(DateTime, default=utcnow)

    thread = relationship("InboxThread", back_populates="messages")


class UsageRecord(Base):
    __tablename__ = "usage_records"
    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, nullable=False, index=True)
    cost = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=utcnow, index=True)
