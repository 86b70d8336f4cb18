import json
from dataclasses import dataclass
from typing import Optional

from openai import OpenAI

from agent_inbox.util.logger import get_logger

log = get_logger("agent_inbox.agent")

FALLBACK_REPLY = "Something went wrong. Try again in a sec."
APPROVAL_NOTE = "(This action needs your approval. Open the app to confirm.)"


@dataclass
class AgentResult:
    run_id: str
    message: str
    follow_up_question: Optional[str] = None
    requires_approval: bool = False


@dataclass
class AgentReply:
    text: str
    run_id: Optional[str]
    ok: bool


class Agent:
    """Natural-language agent capability: text in, AgentResult out."""

    def run(self, message: str, account_id: str) -> AgentResult:
        raise NotImplementedError


# ==== Default agent: one chat completion with a strict JSON reply ====
AGENT_SYS = """
You are a CRM assistant that users reach by text message.
Read the user's message (and any conversation context above it) and decide what to say back.

Return ONLY a JSON object:
{
  "message": "<reply to send, plain text, no markdown>",
  "follow_up_question": "<one short question if you need more info, else null>",
  "requires_approval": <true if the user asked to create, change or delete data, else false>
}

Rules:
- Keep replies short; they are read on a phone.
- Never claim a change was made. Changes are confirmed by the user in the app.
- Never ask for passwords, card numbers or one-time codes.
"""


class OpenAIAgent(Agent):
    def __init__(self, api_key: str = "", model: str = "gpt-4o-mini", client=None):
        self.model = model
        self._api_key = api_key
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = OpenAI(api_key=self._api_key or None)
        return self._client

    def run(self, message: str, account_id: str) -> AgentResult:
        msgs = [
            {"role": "system", "content": AGENT_SYS},
            {"role": "user", "content": message},
        ]
        r = self.client.chat.completions.create(
            model=self.model,
            temperature=0,
            messages=msgs,
            max_tokens=400,
            response_format={"type": "json_object"},
            user=account_id,
        )
        raw = (r.choices[0].message.content or "").strip()
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("agent returned non-JSON output run=%s", r.id)
            obj = {"message": raw}
        if not isinstance(obj, dict):
            obj = {"message": str(obj)}

        text = (obj.get("message") or "").strip()
        if not text:
            raise ValueError("agent returned an empty message")
        return AgentResult(
            run_id=r.id,
            message=text,
            follow_up_question=(obj.get("follow_up_question") or None),
            requires_approval=bool(obj.get("requires_approval") or False),
        )


class AgentGateway:
    """
    Wraps the agent so the pipeline always gets a reply back:
    composes message + follow-up + approval note, and turns any
    agent exception into the fixed fallback with no run id.
    """

    def __init__(self, agent: Agent):
        self.agent = agent

    @staticmethod
    def compose(result: AgentResult) -> str:
        text = result.message
        if result.follow_up_question:
            text += "\n\n" + result.follow_up_question
        if result.requires_approval:
            text += "\n\n" + APPROVAL_NOTE
        return text

    def reply(self, message: str, account_id: str) -> AgentReply:
        try:
            result = self.agent.run(message, account_id)
        except Exception:
            log.exception("agent run failed account=%s", account_id)
            return AgentReply(text=FALLBACK_REPLY, run_id=None, ok=False)
        return AgentReply(text=self.compose(result), run_id=result.run_id, ok=True)
