# agent_inbox/main.py
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from agent_inbox.settings import Settings
from agent_inbox.storage.db import build_engine, build_session_factory, init_db
from agent_inbox.util.logger import configure

# Providers
from agent_inbox.providers.base import SmsProvider  # dry-run provider
from agent_inbox.providers.twilio import TwilioProvider

# Services
from agent_inbox.services.agent import Agent, AgentGateway, OpenAIAgent
from agent_inbox.services.dispatcher import OutboundDispatcher, CHANNEL_LIMITS
from agent_inbox.services.governor import UsageGovernor
from agent_inbox.services.pipeline import InboundPipeline
from agent_inbox.services.windows import WindowManager

# Routers
from agent_inbox.routers.sms import router as sms_router
from agent_inbox.routers.chat import router as chat_router
from agent_inbox.routers.inbox import router as inbox_router
from agent_inbox.routers.account import router as account_router


def _select_provider(settings: Settings, log) -> SmsProvider:
    if settings.twilio_enabled:
        log.info("Provider: Twilio (dry_run=%s)", settings.dry_run)
        return TwilioProvider.from_settings(settings)
    log.warning("Provider: DRY-RUN base provider (Twilio not configured)")
    return SmsProvider(dry_run=True)


def create_app(settings: Optional[Settings] = None, provider: Optional[SmsProvider] = None,
               agent: Optional[Agent] = None, session_factory=None, engine=None, clock=None) -> FastAPI:
    """
    Build the app with its collaborators wired in. Tests pass fakes for the
    provider/agent and an in-memory session factory; production takes
    everything from the environment.
    """
    settings = settings or Settings.from_env()
    log = configure(settings.log_level)

    if session_factory is None:
        engine = engine or build_engine(settings.database_url)
        session_factory = build_session_factory(engine)
    provider = provider or _select_provider(settings, log)
    agent = agent or OpenAIAgent(api_key=settings.openai_api_key, model=settings.agent_model)

    windows = WindowManager(settings.window_minutes)
    governor = UsageGovernor(settings)
    dispatcher = OutboundDispatcher(
        provider,
        session_factory,
        windows,
        limits={**CHANNEL_LIMITS, "sms": settings.sms_max_chars},
        from_number=settings.twilio_phone_number,
    )
    pipeline_kwargs = {"clock": clock} if clock else {}
    pipeline = InboundPipeline(settings, session_factory, AgentGateway(agent), governor,
                               windows, dispatcher, **pipeline_kwargs)

    app = FastAPI(title=settings.app_name)
    app.state.settings = settings
    app.state.env = settings.app_env
    app.state.dry_run = settings.dry_run
    app.state.session_factory = session_factory
    app.state.provider = provider
    app.state.windows = windows
    app.state.governor = governor
    app.state.pipeline = pipeline

    app.include_router(sms_router)
    app.include_router(chat_router)
    app.include_router(inbox_router)
    app.include_router(account_router)

    @app.on_event("startup")
    def _init_db():
        if engine is not None:
            init_db(engine)
            log.info("db: tables ensured")

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.head("/healthz")
    def healthz_head():
        return {}

    @app.get("/health")
    def health():
        return JSONResponse({"ok": True, "env": settings.app_env, "dry_run": settings.dry_run})

    return app


# uvicorn agent_inbox.main:app
app = create_app()
