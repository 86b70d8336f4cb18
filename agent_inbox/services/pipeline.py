"""
Inbound message pipeline.

Every inbound event walks the same path, top to bottom:

    dedup -> identity -> command? -> quota -> window + user turn (one txn)
    -> inbox thread (best effort) -> command reply | context + agent
    -> truncate + send + assistant turn (one txn)

`handle()` never raises: anything unexpected past validation is logged,
one apology is attempted, and the caller still acknowledges the provider.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError

from agent_inbox.storage.db import session_scope
from agent_inbox.storage.models import SmsMessage, utcnow
from agent_inbox.services import identity, threads
from agent_inbox.services.agent import AgentGateway, AgentReply, FALLBACK_REPLY
from agent_inbox.services.commands import match_command
from agent_inbox.services.context import build_agent_input
from agent_inbox.services.dispatcher import OutboundDispatcher
from agent_inbox.services.governor import UsageGovernor
from agent_inbox.services.windows import WindowManager
from agent_inbox.util.logger import get_logger

log = get_logger("agent_inbox.pipeline")

QUOTA_REPLY = "You've hit your usage limit. Try again later."


def onboarding_reply(signup_url: str) -> str:
    return (
        "Hey! Looks like you don't have an account linked to this number yet. "
        f"Sign up at {signup_url}"
    )


@dataclass
class InboundEvent:
    channel: str
    from_address: str
    to_address: str
    text: str
    provider_id: str


@dataclass
class PipelineOutcome:
    status: str       # ignored | duplicate | onboarding | rate_limited | command | replied | failed
    reply: Optional[str] = None
    run_id: Optional[str] = None
    conversation_id: Optional[int] = None
    account_id: Optional[str] = None


class InboundPipeline:
    def __init__(self, settings, session_factory, gateway: AgentGateway, governor: UsageGovernor,
                 windows: WindowManager, dispatcher: OutboundDispatcher,
                 clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.session_factory = session_factory
        self.gateway = gateway
        self.governor = governor
        self.windows = windows
        self.dispatcher = dispatcher
        self.clock = clock

    async def handle(self, event: InboundEvent) -> PipelineOutcome:
        if not event.from_address or not event.provider_id:
            log.info("inbound ignored: missing sender or message id channel=%s", event.channel)
            return PipelineOutcome("ignored")
        try:
            return await self._process(event)
        except Exception:
            log.exception("inbound pipeline failed channel=%s from=%s id=%s",
                          event.channel, event.from_address, event.provider_id)
            await self._apologize(event)
            return PipelineOutcome("failed", reply=FALLBACK_REPLY)

    async def _apologize(self, event: InboundEvent):
        try:
            await self.dispatcher.send_notice(event.channel, event.from_address, FALLBACK_REPLY, userref="apology")
        except Exception:
            log.warning("apology send failed to=%s", event.from_address)

    def _store_unanswered(self, event: InboundEvent, account_id: Optional[str]) -> bool:
        """
        Keep the raw record of an inbound that gets a fixed notice instead of
        a conversation turn. False when another delivery already stored it.
        """
        if event.channel != "sms":
            return True
        try:
            with session_scope(self.session_factory) as db:
                db.add(SmsMessage(
                    account_id=account_id,
                    direction="inbound",
                    from_address=event.from_address,
                    to_address=event.to_address,
                    body=event.text,
                    provider_sid=event.provider_id,
                    status="received",
                ))
                db.flush()
        except IntegrityError:
            log.info("inbound duplicate lost insert race id=%s", event.provider_id)
            return False
        return True

    def _is_duplicate(self, event: InboundEvent) -> bool:
        if event.channel != "sms":
            return False
        with session_scope(self.session_factory) as db:
            return db.query(SmsMessage.id).filter(SmsMessage.provider_sid == event.provider_id).first() is not None

    async def _process(self, event: InboundEvent) -> PipelineOutcome:
        now = self.clock()
        channel = event.channel

        if self._is_duplicate(event):
            log.info("inbound duplicate ignored id=%s", event.provider_id)
            return PipelineOutcome("duplicate")

        with session_scope(self.session_factory) as db:
            account = identity.resolve(db, channel, event.from_address)
        if account is identity.UNKNOWN:
            log.info("inbound from unknown sender channel=%s from=%s", channel, event.from_address)
            if not self._store_unanswered(event, None):
                return PipelineOutcome("duplicate")
            text = onboarding_reply(self.settings.signup_url)
            await self.dispatcher.send_notice(channel, event.from_address, text, userref="onboarding")
            return PipelineOutcome("onboarding", reply=text)
        account_id = account.account_id

        command_reply = match_command(event.text)
        if command_reply is None:
            with session_scope(self.session_factory) as db:
                limit = self.governor.check_rate_limit(db, account_id, now)
            if not limit.allowed:
                log.info("inbound rate limited account=%s reason=%s retry_after=%s",
                         account_id, limit.reason, limit.retry_after)
                if not self._store_unanswered(event, account_id):
                    return PipelineOutcome("duplicate", account_id=account_id)
                await self.dispatcher.send_notice(channel, event.from_address, QUOTA_REPLY, userref="quota")
                return PipelineOutcome("rate_limited", reply=QUOTA_REPLY, account_id=account_id)

        # window + user turn + raw record + activity bump commit together
        try:
            with session_scope(self.session_factory) as db:
                convo, created = self.windows.open_or_extend(db, account_id, channel, now)
                turn = self.windows.append_turn(db, convo, "user", event.text, now=now)
                if channel == "sms":
                    db.add(SmsMessage(
                        account_id=account_id,
                        direction="inbound",
                        from_address=event.from_address,
                        to_address=event.to_address,
                        body=event.text,
                        provider_sid=event.provider_id,
                        status="received",
                    ))
                    db.flush()
                conversation_id = convo.id
                history = [
                    {"role": t.role, "content": t.content}
                    for t in self.windows.history(db, convo.id, self.settings.history_limit, exclude_turn_id=turn.id)
                ]
                other = [
                    {"role": t.role, "content": t.content, "channel": t.channel}
                    for t in self.windows.other_channel_turns(db, account_id, channel, now,
                                                              self.settings.cross_channel_limit)
                ]
        except IntegrityError:
            # a concurrent delivery of the same message id got there first
            log.info("inbound duplicate lost insert race id=%s", event.provider_id)
            return PipelineOutcome("duplicate", account_id=account_id)
        log.info("inbound stored account=%s channel=%s conversation=%s new=%s",
                 account_id, channel, conversation_id, created)

        if channel != "web":
            self._record_inbox(event, account_id, now)

        if command_reply is not None:
            reply = AgentReply(text=command_reply, run_id=None, ok=True)
            status = "command"
        else:
            agent_input = build_agent_input(history, other, event.text)
            reply = await asyncio.to_thread(self.gateway.reply, agent_input, account_id)
            if reply.ok:
                with session_scope(self.session_factory) as db:
                    self.governor.record_usage(db, account_id, now=now)
            status = "replied"

        sent = await self.dispatcher.send_reply(
            account_id=account_id,
            conversation_id=conversation_id,
            channel=channel,
            to=event.from_address,
            text=reply.text,
            agent_run_id=reply.run_id,
            from_address=event.to_address,
            now=now,
        )
        return PipelineOutcome(status, reply=sent.text, run_id=reply.run_id,
                               conversation_id=conversation_id, account_id=account_id)

    def _record_inbox(self, event: InboundEvent, account_id: str, now: datetime):
        try:
            with session_scope(self.session_factory) as db:
                thread, _ = threads.find_or_create_thread(db, event.channel, event.from_address, "inbound", account_id)
                threads.record_message(
                    db, thread.id, "inbound", event.provider_id, event.text, event.channel,
                    from_address=event.from_address, to_address=event.to_address,
                    status="received", occurred_at=now,
                )
        except Exception:
            log.exception("inbox thread update failed id=%s", event.provider_id)
