"""Shared fakes and builders for pipeline, store and API tests."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from agent_inbox.providers.base import ProviderError, SmsProvider
from agent_inbox.services import identity
from agent_inbox.services.agent import Agent, AgentGateway, AgentResult
from agent_inbox.services.dispatcher import OutboundDispatcher
from agent_inbox.services.governor import UsageGovernor
from agent_inbox.services.pipeline import InboundEvent, InboundPipeline
from agent_inbox.services.windows import WindowManager
from agent_inbox.settings import Settings
from agent_inbox.storage.db import build_engine, build_session_factory, init_db, session_scope

ACCOUNT_ID = "acct-1"
ACCOUNT_PHONE = "+15551230000"
OUR_NUMBER = "+15550000000"
START = datetime(2026, 3, 2, 12, 0, 0)


class _Clock:
    """Deterministic clock the pipeline reads instead of wall time."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now = self.now + timedelta(minutes=minutes)


class _FakeProvider(SmsProvider):
    """Transport fake that records sends and can be told to fail."""

    def __init__(self, fail: bool = False) -> None:
        super().__init__(dry_run=True)
        self.fail = fail

    async def send(self, to, body, userref=None):
        if self.fail:
            raise ProviderError("transport down")
        provider_id = f"SMout{len(self.sent) + 1}"
        self.sent.append({"to": to, "body": body, "userref": userref, "id": provider_id})
        return provider_id


class _FakeAgent(Agent):
    """Agent fake returning a programmable result and capturing inputs."""

    def __init__(self, message: str = "On it.", follow_up: str | None = None,
                 requires_approval: bool = False) -> None:
        self.message = message
        self.follow_up = follow_up
        self.requires_approval = requires_approval
        self.calls: list[tuple[str, str]] = []

    def run(self, message, account_id):
        self.calls.append((message, account_id))
        return AgentResult(
            run_id=f"run-{len(self.calls)}",
            message=self.message,
            follow_up_question=self.follow_up,
            requires_approval=self.requires_approval,
        )


class _BrokenAgent(Agent):
    """Agent fake that always raises."""

    def __init__(self) -> None:
        self.calls = 0

    def run(self, message, account_id):
        self.calls += 1
        raise RuntimeError("agent exploded")


def _settings(**overrides) -> Settings:
    base = Settings(
        database_url="sqlite://",
        twilio_auth_token="test-token",
        twilio_phone_number=OUR_NUMBER,
        public_base_url="https://hooks.example.test",
        signup_url="https://example.com/signup",
    )
    return base.with_overrides(**overrides)


def _event(text: str, sid: str, sender: str = ACCOUNT_PHONE, channel: str = "sms") -> InboundEvent:
    return InboundEvent(channel=channel, from_address=sender, to_address=OUR_NUMBER,
                        text=text, provider_id=sid)


class _Harness:
    """Pipeline wired to in-memory sqlite and fakes."""

    def __init__(self, settings: Settings, agent: Agent, provider: _FakeProvider, clock: _Clock) -> None:
        self.settings = settings
        self.agent = agent
        self.provider = provider
        self.clock = clock
        self.engine = build_engine(settings.database_url)
        init_db(self.engine)
        self.session_factory = build_session_factory(self.engine)
        self.windows = WindowManager(settings.window_minutes)
        self.governor = UsageGovernor(settings)
        self.dispatcher = OutboundDispatcher(
            provider, self.session_factory, self.windows,
            limits={"sms": settings.sms_max_chars}, from_number=OUR_NUMBER,
        )
        self.pipeline = InboundPipeline(settings, self.session_factory, AgentGateway(agent),
                                        self.governor, self.windows, self.dispatcher, clock=clock)

    def link(self, account_id: str = ACCOUNT_ID, phone: str = ACCOUNT_PHONE) -> None:
        with session_scope(self.session_factory) as db:
            identity.link_phone(db, account_id, phone)

    def session(self):
        return session_scope(self.session_factory)


@pytest.fixture
def make_harness():
    """Builder: make_harness(agent=..., provider=..., **settings_overrides)."""

    def _make(agent: Agent | None = None, provider: _FakeProvider | None = None,
              link: bool = True, **overrides) -> _Harness:
        h = _Harness(_settings(**overrides), agent or _FakeAgent(), provider or _FakeProvider(), _Clock())
        if link:
            h.link()
        return h

    return _make


@pytest.fixture
def fake_agent_cls():
    return _FakeAgent


@pytest.fixture
def broken_agent_cls():
    return _BrokenAgent


@pytest.fixture
def fake_provider_cls():
    return _FakeProvider


@pytest.fixture
def event():
    return _event


@pytest.fixture
def settings_factory():
    return _settings
