import re
from typing import Optional

HELP_TEXT = (
    "Text me like you'd text an assistant. I can:\n"
    "- add or update contacts and leads\n"
    "- log notes, calls and tasks\n"
    "- look up deals, properties and follow-ups\n"
    "- draft messages for you to approve\n"
    "Anything that changes your data waits for your OK in the app. "
    "Text HELP anytime to see this again."
)

TRIGGERS = {
    "help": HELP_TEXT,
    "?": HELP_TEXT,
    "what can you do": HELP_TEXT,
    "commands": HELP_TEXT,
}

_TRAILING = re.compile(r"[\s.!?]+$")
_SPACES = re.compile(r"\s+")


def _normalize(text: str) -> str:
    s = _SPACES.sub(" ", (text or "").strip().lower())
    if s == "?":
        return s
    return _TRAILING.sub("", s)


def match_command(text: str) -> Optional[str]:
    """Static reply for a literal command, or None to let the agent answer."""
    return TRIGGERS.get(_normalize(text))
