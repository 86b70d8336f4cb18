import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

from dotenv import load_dotenv, find_dotenv

# .env from project root if present; real environment wins
load_dotenv(find_dotenv(usecwd=True), override=False)


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    app_env: str = "local"
    app_name: str = "Agent Inbox"
    log_level: str = "INFO"
    database_url: str = "sqlite:///./dev.db"
    dry_run: bool = True

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    twilio_api_base: str = "https://api.twilio.com"
    public_base_url: str = ""
    validate_signatures: bool = True

    # Conversation
    window_minutes: int = 30
    history_limit: int = 10
    cross_channel_limit: int = 6
    sms_max_chars: int = 1500
    signup_url: str = "https://example.com/signup"

    # Usage governor
    requests_per_minute: int = 10
    requests_per_hour: int = 50
    requests_per_day: int = 200
    global_requests_per_hour: int = 500
    global_requests_per_day: int = 2000
    cost_per_request: float = 0.01
    max_daily_spend: float = 5.0
    max_monthly_spend: float = 50.0

    # Agent
    openai_api_key: str = ""
    agent_model: str = "gpt-4o-mini"

    def __post_init__(self):
        # truncation keeps room for the "..." marker
        if self.sms_max_chars < 3:
            raise ValueError(f"SMS_MAX_CHARS must be at least 3, got {self.sms_max_chars}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        get = env.get
        return cls(
            app_env=get("APP_ENV", "local"),
            app_name=get("APP_NAME", "Agent Inbox"),
            log_level=get("LOG_LEVEL", "INFO"),
            database_url=get("DATABASE_URL", "sqlite:///./dev.db"),
            dry_run=_flag(get("DRY_RUN"), True),
            twilio_account_sid=get("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=get("TWILIO_AUTH_TOKEN", ""),
            twilio_phone_number=get("TWILIO_PHONE_NUMBER", ""),
            twilio_api_base=get("TWILIO_API_BASE", "https://api.twilio.com").rstrip("/"),
            public_base_url=get("PUBLIC_BASE_URL", "").rstrip("/"),
            validate_signatures=_flag(get("VALIDATE_SIGNATURES"), True),
            window_minutes=int(get("CONVERSATION_WINDOW_MINUTES", "30")),
            history_limit=int(get("HISTORY_LIMIT", "10")),
            cross_channel_limit=int(get("CROSS_CHANNEL_LIMIT", "6")),
            sms_max_chars=int(get("SMS_MAX_CHARS", "1500")),
            signup_url=get("SIGNUP_URL", "https://example.com/signup"),
            requests_per_minute=int(get("LAM_REQUESTS_PER_MINUTE", "10")),
            requests_per_hour=int(get("LAM_REQUESTS_PER_HOUR", "50")),
            requests_per_day=int(get("LAM_REQUESTS_PER_DAY", "200")),
            global_requests_per_hour=int(get("LAM_GLOBAL_REQUESTS_PER_HOUR", "500")),
            global_requests_per_day=int(get("LAM_GLOBAL_REQUESTS_PER_DAY", "2000")),
            cost_per_request=float(get("LAM_COST_PER_REQUEST", "0.01")),
            max_daily_spend=float(get("LAM_MAX_DAILY_SPEND", "5")),
            max_monthly_spend=float(get("LAM_MAX_MONTHLY_SPEND", "50")),
            openai_api_key=get("OPENAI_API_KEY", ""),
            agent_model=get("LLM_AGENT_MODEL", get("LLM_MODEL", "gpt-4o-mini")),
        )

    def with_overrides(self, **kwargs) -> "Settings":
        return replace(self, **kwargs)

    @property
    def twilio_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_phone_number)
