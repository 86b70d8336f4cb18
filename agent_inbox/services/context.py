from typing import Iterable, List

CHANNEL_LABELS = {
    "sms": "SMS",
    "web": "web chat",
    "email": "email",
    "voice": "voice",
}


def _get(turn, key):
    return turn.get(key) if isinstance(turn, dict) else getattr(turn, key, None)


def _lines(turns: Iterable) -> List[str]:
    return [f"{_get(t, 'role')}: {_get(t, 'content') or ''}" for t in turns]


def build_agent_input(history: Iterable, other_channel_turns: Iterable, message: str) -> str:
    """
    Flatten conversation context into the free-text prompt the agent takes.

    `history` is the current conversation without the message being answered,
    oldest first. `other_channel_turns` are the same account's recent turns on
    other channels, grouped here by channel. With neither, `message` goes out
    untouched.
    """
    blocks = []
    current = _lines(history)
    if current:
        blocks.append("Previous conversation:\n" + "\n".join(current))

    by_channel = {}
    for t in other_channel_turns:
        by_channel.setdefault(_get(t, "channel") or "other", []).append(t)
    for channel, turns in by_channel.items():
        label = CHANNEL_LABELS.get(channel, channel)
        blocks.append(f"Earlier on {label}:\n" + "\n".join(_lines(turns)))

    if not blocks:
        return message
    return "\n\n".join(blocks) + "\n\nNew message: " + message
