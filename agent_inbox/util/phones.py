import re

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str) -> str:
    """
    Best-effort E.164 for the US-centric numbers the SMS channel sees.
      "(555) 123-4567" -> "+15551234567"
      "15551234567"    -> "+15551234567"
      "+447700900123"  -> "+447700900123"
    Anything else comes back stripped but otherwise untouched.
    """
    s = (raw or "").strip()
    if not s:
        return ""
    digits = _NON_DIGITS.sub("", s)
    if s.startswith("+") and digits:
        return f"+{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    return s


def normalize_address(channel: str, address: str) -> str:
    a = (address or "").strip()
    if channel in ("sms", "voice"):
        return normalize_phone(a)
    if channel == "email" or "@" in a:
        return a.lower()
    return a
