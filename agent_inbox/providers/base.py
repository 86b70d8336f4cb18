import time
from typing import Any, Dict, Mapping, Optional

from agent_inbox.util.logger import get_logger

log = get_logger("agent_inbox.provider")

# provider status -> our sms_messages.status; queued/sending callbacks are ignored
STATUS_MAP = {
    "sent": "sent",
    "delivered": "delivered",
    "undelivered": "failed",
    "failed": "failed",
}

# a record in one of these never moves again
FINAL_STATUSES = ("delivered", "failed")


class ProviderError(RuntimeError):
    """Raised when the transport could not accept an outbound message."""


class SmsProvider:
    name = "dry-run"

    def __init__(self, dry_run: bool = True):
        self.dry_run = dry_run
        self.sent = []

    async def send(self, to: str, body: str, userref: Optional[str] = None) -> str:
        """
        No external API: log, remember, and hand back a fake provider id
        so the rest of the pipeline can be exercised end to end.
        """
        fake_id = f"dev-{int(time.time() * 1000)}-{len(self.sent)}"
        self.sent.append({"to": to, "body": body, "userref": userref, "id": fake_id})
        log.info("[DRY_RUN SEND] to=%s userref=%s chars=%s -> id=%s", to, userref, len(body), fake_id)
        return fake_id

    def parse_inbound(self, form: Mapping[str, Any]) -> Dict[str, str]:
        # Twilio-style form fields
        return {
            "from": str(form.get("From") or "").strip(),
            "to": str(form.get("To") or "").strip(),
            "text": str(form.get("Body") or "").strip(),
            "provider_id": str(form.get("MessageSid") or form.get("SmsSid") or "").strip(),
        }

    def parse_status(self, form: Mapping[str, Any]) -> Dict[str, Optional[str]]:
        raw = str(form.get("MessageStatus") or form.get("SmsStatus") or "").strip().lower()
        return {
            "provider_id": str(form.get("MessageSid") or form.get("SmsSid") or "").strip(),
            "raw_status": raw,
            "status": STATUS_MAP.get(raw),
        }
