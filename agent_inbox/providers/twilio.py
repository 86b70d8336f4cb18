import asyncio
import base64
import hashlib
import hmac
from typing import Any, Dict, Mapping, Optional

import requests

from agent_inbox.providers.base import SmsProvider, ProviderError
from agent_inbox.util.logger import get_logger

TIMEOUT = (5, 15)  # connect, read
log = get_logger("agent_inbox.twilio")


# --------------------------------------------------------------------
# Webhook signatures
# --------------------------------------------------------------------
def compute_signature(auth_token: str, url: str, params: Mapping[str, Any]) -> str:
    """
    X-Twilio-Signature: base64(HMAC-SHA1(token, url + k1 + v1 + k2 + v2 ...))
    with POST params sorted by key.
    """
    payload = url + "".join(f"{k}{params[k]}" for k in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def validate_signature(auth_token: str, url: str, params: Mapping[str, Any], signature: Optional[str]) -> bool:
    if not auth_token or not signature:
        return False
    expected = compute_signature(auth_token, url, params)
    return hmac.compare_digest(expected, signature)


# --------------------------------------------------------------------
# Provider class
# --------------------------------------------------------------------
class TwilioProvider(SmsProvider):
    """
    Async-capable provider for the Twilio Messages API:
      - send(): requests POST offloaded to a thread, raises ProviderError on failure
      - parse_inbound()/parse_status(): inherited, Twilio form field names
    """

    name = "twilio"

    def __init__(self, account_sid: str, auth_token: str, from_number: str,
                 api_base: str = "https://api.twilio.com", dry_run: bool = False):
        super().__init__(dry_run=dry_run)
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base = api_base.rstrip("/")

    @classmethod
    def from_settings(cls, settings) -> "TwilioProvider":
        return cls(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_phone_number,
            api_base=settings.twilio_api_base,
            dry_run=settings.dry_run,
        )

    def is_enabled(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send(self, to: str, body: str, userref: Optional[str] = None) -> str:
        if self.dry_run or not self.is_enabled():
            return await super().send(to, body, userref=userref)

        url = f"{self.api_base}/2010-04-01/Accounts/{self.account_sid}/Messages.json"
        data = {"To": to, "From": self.from_number, "Body": body}

        def _post():
            return requests.post(url, data=data, auth=(self.account_sid, self.auth_token), timeout=TIMEOUT)

        try:
            resp = await asyncio.to_thread(_post)
        except requests.RequestException as e:
            log.exception("Twilio send error to=%s", to)
            raise ProviderError(f"twilio request failed: {e}") from e

        try:
            payload: Dict[str, Any] = resp.json()
        except ValueError:
            payload = {"_raw": resp.text}

        if resp.status_code not in (200, 201):
            log.error("Twilio send failed status=%s data=%s", resp.status_code, payload)
            raise ProviderError(f"twilio returned {resp.status_code}: {payload.get('message') or payload}")

        sid = payload.get("sid")
        if not sid:
            raise ProviderError("twilio response carried no message sid")
        log.info("Twilio sent to=%s sid=%s userref=%s", to, sid, userref)
        return sid
