"""HTTP surface: webhook signature + TwiML contract, inbox, settings and web chat APIs."""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from agent_inbox.main import create_app
from agent_inbox.providers.twilio import compute_signature
from agent_inbox.services import identity
from agent_inbox.services.agent import FALLBACK_REPLY
from agent_inbox.storage.db import build_engine, build_session_factory, init_db, session_scope
from agent_inbox.storage.models import ConversationTurn, PhoneVerification, SmsMessage, utcnow

TOKEN = "test-token"
PUBLIC = "https://hooks.example.test"
ACCOUNT_ID = "acct-1"
ACCOUNT_PHONE = "+15551230000"
HEADERS = {"X-Account-Id": ACCOUNT_ID}


class _Api:
    """App under test plus handles on its fakes and database."""

    def __init__(self, settings, agent, provider) -> None:
        engine = build_engine("sqlite://")
        init_db(engine)
        self.session_factory = build_session_factory(engine)
        self.agent = agent
        self.provider = provider
        self.app = create_app(settings, provider=provider, agent=agent, session_factory=self.session_factory)
        self.client = TestClient(self.app)

    def link(self, account_id=ACCOUNT_ID, phone=ACCOUNT_PHONE) -> None:
        with session_scope(self.session_factory) as db:
            identity.link_phone(db, account_id, phone)

    def post_sms(self, path: str, params: dict, signature: str | None = "auto"):
        if signature == "auto":
            signature = compute_signature(TOKEN, PUBLIC + path, params)
        headers = {"X-Twilio-Signature": signature} if signature else {}
        return self.client.post(path, data=params, headers=headers)


@pytest.fixture
def api(settings_factory, fake_agent_cls, fake_provider_cls):
    def _make(agent=None, **overrides) -> _Api:
        a = _Api(settings_factory(**overrides), agent or fake_agent_cls(), fake_provider_cls())
        a.link()
        return a

    return _make


def _inbound(sid="SM1", body="hello", sender=ACCOUNT_PHONE) -> dict:
    return {"From": sender, "To": "+15550000000", "Body": body, "MessageSid": sid}


def _is_empty_twiml(resp) -> bool:
    return (
        resp.status_code == 200
        and resp.headers["content-type"].startswith("text/xml")
        and resp.text.endswith("<Response/>")
    )


# ---------- webhook ----------

def test_bad_signature_is_rejected_without_side_effects(api) -> None:
    """Wrong or missing signatures get 403 and nothing is stored or sent."""
    a = api()

    wrong = a.post_sms("/sms/inbound", _inbound(), signature="bm90LWEtc2lnbmF0dXJl")
    missing = a.post_sms("/sms/inbound", _inbound(), signature=None)

    assert wrong.status_code == 403
    assert missing.status_code == 403
    assert a.provider.sent == []
    assert a.agent.calls == []
    with session_scope(a.session_factory) as db:
        assert db.query(SmsMessage).count() == 0


def test_signed_inbound_replies_and_acks_with_empty_twiml(api) -> None:
    """A valid webhook runs the pipeline and acknowledges with <Response/>."""
    a = api()

    resp = a.post_sms("/sms/inbound", _inbound(body="what's next?"))

    assert _is_empty_twiml(resp)
    assert len(a.provider.sent) == 1
    assert a.provider.sent[0]["to"] == ACCOUNT_PHONE
    assert a.agent.calls[0] == ("what's next?", ACCOUNT_ID)


def test_redelivered_webhook_is_acked_once_processed(api) -> None:
    """Provider retries of one MessageSid are acknowledged but never re-answered."""
    a = api()

    first = a.post_sms("/sms/inbound", _inbound(sid="SMretry"))
    second = a.post_sms("/sms/inbound", _inbound(sid="SMretry"))

    assert _is_empty_twiml(first) and _is_empty_twiml(second)
    assert len(a.provider.sent) == 1


def test_malformed_inbound_is_acked_as_noop(api) -> None:
    """Missing MessageSid or From is acknowledged with no work done."""
    a = api()

    no_sid = a.post_sms("/sms/inbound", {"From": ACCOUNT_PHONE, "Body": "hi"})
    no_from = a.post_sms("/sms/inbound", {"Body": "hi", "MessageSid": "SM9"})

    assert _is_empty_twiml(no_sid) and _is_empty_twiml(no_from)
    assert a.provider.sent == []


def test_agent_failure_still_acks_provider(api, broken_agent_cls) -> None:
    """An exploding agent yields one apology SMS and a 200 acknowledgment."""
    a = api(agent=broken_agent_cls())

    resp = a.post_sms("/sms/inbound", _inbound(body="Add John Smith as a lead"))

    assert _is_empty_twiml(resp)
    assert [s["body"] for s in a.provider.sent] == [FALLBACK_REPLY]


def test_signature_check_can_be_disabled_for_local_runs(api) -> None:
    """VALIDATE_SIGNATURES=0 accepts unsigned posts."""
    a = api(validate_signatures=False)

    resp = a.post_sms("/sms/inbound", _inbound(), signature=None)

    assert _is_empty_twiml(resp)
    assert len(a.provider.sent) == 1


def test_status_callback_updates_delivery_state(api) -> None:
    """Delivery receipts move the outbound record from sent to its final state."""
    a = api()
    a.post_sms("/sms/inbound", _inbound())
    out_sid = a.provider.sent[0]["id"]

    sent = a.post_sms("/sms/status", {"MessageSid": out_sid, "MessageStatus": "sent"})
    unknown = a.post_sms("/sms/status", {"MessageSid": out_sid, "MessageStatus": "teleported"})
    failed = a.post_sms("/sms/status", {"MessageSid": out_sid, "MessageStatus": "undelivered"})

    assert _is_empty_twiml(sent) and _is_empty_twiml(unknown) and _is_empty_twiml(failed)
    with session_scope(a.session_factory) as db:
        assert db.query(SmsMessage).filter_by(provider_sid=out_sid).one().status == "failed"
    thread_id = a.client.get("/api/inbox/threads", headers=HEADERS).json()["threads"][0]["id"]
    detail = a.client.get(f"/api/inbox/threads/{thread_id}", headers=HEADERS).json()
    assert [m["status"] for m in detail["messages"]] == ["received", "failed"]


def test_late_status_callback_never_downgrades_final_state(api) -> None:
    """Once delivered, out-of-order queued/sent/failed callbacks leave the record alone."""
    a = api()
    a.post_sms("/sms/inbound", _inbound())
    out_sid = a.provider.sent[0]["id"]

    a.post_sms("/sms/status", {"MessageSid": out_sid, "MessageStatus": "delivered"})
    for late in ("queued", "sending", "sent", "undelivered"):
        resp = a.post_sms("/sms/status", {"MessageSid": out_sid, "MessageStatus": late})
        assert _is_empty_twiml(resp)

    with session_scope(a.session_factory) as db:
        assert db.query(SmsMessage).filter_by(provider_sid=out_sid).one().status == "delivered"
    thread_id = a.client.get("/api/inbox/threads", headers=HEADERS).json()["threads"][0]["id"]
    detail = a.client.get(f"/api/inbox/threads/{thread_id}", headers=HEADERS).json()
    assert detail["messages"][-1]["status"] == "delivered"


def test_inbound_body_is_trimmed(api) -> None:
    """Surrounding whitespace in Body never reaches the agent."""
    a = api()

    a.post_sms("/sms/inbound", _inbound(body="  what's next?\n"))

    assert a.agent.calls[0] == ("what's next?", ACCOUNT_ID)


def test_status_callback_requires_signature(api) -> None:
    """Delivery callbacks are authenticated the same way as inbound messages."""
    a = api()
    resp = a.post_sms("/sms/status", {"MessageSid": "SMx", "MessageStatus": "delivered"}, signature=None)
    assert resp.status_code == 403


# ---------- inbox ----------

def test_inbox_requires_account_header(api) -> None:
    """Account-scoped APIs refuse callers without an account id."""
    a = api()
    assert a.client.get("/api/inbox/threads").status_code == 401


def test_inbox_thread_lifecycle(api) -> None:
    """Threads created by SMS traffic can be read, archived, snoozed and assigned."""
    a = api()
    a.post_sms("/sms/inbound", _inbound(body="hi there"))

    listing = a.client.get("/api/inbox/threads", headers=HEADERS).json()
    assert len(listing["threads"]) == 1
    thread = listing["threads"][0]
    assert thread["address"] == ACCOUNT_PHONE
    assert thread["last_message_preview"] == "On it."
    tid = thread["id"]

    detail = a.client.get(f"/api/inbox/threads/{tid}", headers=HEADERS).json()
    assert [m["direction"] for m in detail["messages"]] == ["inbound", "outbound"]

    assert a.client.post(f"/api/inbox/threads/{tid}/unread", headers=HEADERS).json()["is_unread"] is True
    assert a.client.get("/api/inbox/unread-count", headers=HEADERS).json() == {"count": 1}
    assert a.client.post(f"/api/inbox/threads/{tid}/read", headers=HEADERS).json()["is_unread"] is False

    assert a.client.post(f"/api/inbox/threads/{tid}/archive", headers=HEADERS).json()["status"] == "archived"
    assert a.client.get("/api/inbox/threads", headers=HEADERS).json()["threads"] == []
    archived = a.client.get("/api/inbox/threads", params={"status": "archived"}, headers=HEADERS).json()
    assert [t["id"] for t in archived["threads"]] == [tid]
    assert a.client.post(f"/api/inbox/threads/{tid}/unarchive", headers=HEADERS).json()["status"] == "open"

    snoozed = a.client.post(f"/api/inbox/threads/{tid}/snooze", json={"until": "2999-01-01T09:00:00Z"},
                            headers=HEADERS)
    assert snoozed.json()["status"] == "snoozed"
    assert a.client.post(f"/api/inbox/threads/{tid}/unsnooze", headers=HEADERS).json()["status"] == "open"

    assigned = a.client.post(f"/api/inbox/threads/{tid}/assign", json={"assignee": "acct-9"}, headers=HEADERS)
    assert assigned.json()["assigned_account_id"] == "acct-9"


def test_inbox_errors(api) -> None:
    """Unknown threads are 404; bad inputs are 400."""
    a = api()
    a.post_sms("/sms/inbound", _inbound())
    tid = a.client.get("/api/inbox/threads", headers=HEADERS).json()["threads"][0]["id"]

    assert a.client.get("/api/inbox/threads/9999", headers=HEADERS).status_code == 404
    assert a.client.get(f"/api/inbox/threads/{tid}", headers={"X-Account-Id": "acct-2"}).status_code == 404
    assert a.client.get("/api/inbox/threads", params={"status": "deleted"}, headers=HEADERS).status_code == 400
    assert a.client.post(f"/api/inbox/threads/{tid}/snooze", json={"until": "soon"},
                         headers=HEADERS).status_code == 400
    assert a.client.post(f"/api/inbox/threads/{tid}/snooze", json={"until": "2000-01-01T00:00:00"},
                         headers=HEADERS).status_code == 400


def test_internal_note_is_logged_on_thread_but_never_sent(api) -> None:
    """Notes join the thread log on the internal channel without texting anyone."""
    a = api()
    a.post_sms("/sms/inbound", _inbound())
    tid = a.client.get("/api/inbox/threads", headers=HEADERS).json()["threads"][0]["id"]
    sends_before = len(a.provider.sent)

    note = a.client.post(f"/api/inbox/threads/{tid}/notes", json={"text": " call back Friday "},
                         headers=HEADERS)

    assert note.status_code == 200
    body = note.json()
    assert body["channel"] == "internal"
    assert body["direction"] == "outbound"
    assert body["body"] == "call back Friday"
    assert body["provider_message_id"] is None
    assert len(a.provider.sent) == sends_before
    detail = a.client.get(f"/api/inbox/threads/{tid}", headers=HEADERS).json()
    assert [m["channel"] for m in detail["messages"]] == ["sms", "sms", "internal"]
    assert detail["thread"]["last_message_preview"] == "On it."

    assert a.client.post(f"/api/inbox/threads/{tid}/notes", json={"text": "  "},
                         headers=HEADERS).status_code == 400
    assert a.client.post(f"/api/inbox/threads/{tid}/notes", json={"text": "sneaky"},
                         headers={"X-Account-Id": "acct-2"}).status_code == 404


# ---------- account settings ----------

def test_autopilot_settings_round_trip(api) -> None:
    """Preferences are readable and writable with validation."""
    a = api()

    prefs = a.client.get("/api/settings/autopilot", headers=HEADERS).json()
    assert prefs["autopilot_enabled"] is True
    assert prefs["phone_number"] == ACCOUNT_PHONE

    updated = a.client.put("/api/settings/autopilot",
                           json={"autopilot_enabled": False, "quiet_start": "22:30"}, headers=HEADERS)
    assert updated.status_code == 200
    assert updated.json()["autopilot_enabled"] is False
    assert updated.json()["quiet_start"] == "22:30"

    assert a.client.put("/api/settings/autopilot", json={"quiet_end": "25:00"}, headers=HEADERS).status_code == 400
    assert a.client.put("/api/settings/autopilot", json={"theme": "dark"}, headers=HEADERS).status_code == 400
    assert a.client.get("/api/settings/autopilot", headers={"X-Account-Id": "nobody"}).status_code == 404


def _code_from_last_sms(a) -> str:
    return a.provider.sent[-1]["body"].rsplit(" ", 1)[-1]


def test_phone_verification_enables_sms_for_account(api) -> None:
    """A texted code links the number, after which its texts resolve to the account."""
    a = api()
    new_number = "+15557776666"
    acct2 = {"X-Account-Id": "acct-2"}

    before = a.post_sms("/sms/inbound", _inbound(sid="SM1", sender=new_number))
    assert _is_empty_twiml(before)
    assert a.provider.sent[-1]["body"].startswith("Hey! Looks like")

    sent = a.client.post("/api/phone/send-code", json={"phone_number": "(555) 777-6666"}, headers=acct2)
    assert sent.json() == {"sent": True, "phone_number": new_number}
    assert a.provider.sent[-1]["to"] == new_number
    code = _code_from_last_sms(a)
    assert len(code) == 6 and code.isdigit()
    with session_scope(a.session_factory) as db:
        assert identity.resolve(db, "sms", new_number) is identity.UNKNOWN
        stored = db.query(PhoneVerification).one()
        assert stored.code_hash != code and len(stored.code_hash) == 64

    verified = a.client.post("/api/phone/verify-code",
                             json={"phone_number": "(555) 777-6666", "code": code}, headers=acct2)
    assert verified.json() == {"verified": True, "phone_number": new_number}

    a.post_sms("/sms/inbound", _inbound(sid="SM2", sender=new_number))
    assert a.agent.calls[-1][1] == "acct-2"


def test_phone_verification_rejects_wrong_code(api) -> None:
    """A wrong code is a 400, leaves the number unlinked and counts the attempt."""
    a = api()
    acct2 = {"X-Account-Id": "acct-2"}
    a.client.post("/api/phone/send-code", json={"phone_number": "+15557776666"}, headers=acct2)
    code = _code_from_last_sms(a)
    assert code != "000000"

    resp = a.client.post("/api/phone/verify-code",
                         json={"phone_number": "+15557776666", "code": "000000"}, headers=acct2)

    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid verification code"
    with session_scope(a.session_factory) as db:
        assert identity.resolve(db, "sms", "+15557776666") is identity.UNKNOWN
        assert db.query(PhoneVerification).one().attempts == 1


def test_phone_verification_rejects_expired_code(api) -> None:
    """A correct code past its lifetime no longer links the number."""
    a = api()
    acct2 = {"X-Account-Id": "acct-2"}
    a.client.post("/api/phone/send-code", json={"phone_number": "+15557776666"}, headers=acct2)
    code = _code_from_last_sms(a)
    with session_scope(a.session_factory) as db:
        pending = db.query(PhoneVerification).one()
        pending.expires_at = utcnow() - timedelta(seconds=1)

    resp = a.client.post("/api/phone/verify-code",
                         json={"phone_number": "+15557776666", "code": code}, headers=acct2)

    assert resp.status_code == 400
    assert "expired" in resp.json()["detail"]
    with session_scope(a.session_factory) as db:
        assert identity.resolve(db, "sms", "+15557776666") is identity.UNKNOWN


def test_phone_send_code_refuses_claimed_number(api) -> None:
    """A number linked to another account cannot be re-claimed, and no code is texted."""
    a = api()

    resp = a.client.post("/api/phone/send-code", json={"phone_number": ACCOUNT_PHONE},
                         headers={"X-Account-Id": "acct-2"})

    assert resp.status_code == 400
    assert a.provider.sent == []
    assert a.client.post("/api/phone/link", json={"phone_number": "+15557776666"},
                         headers={"X-Account-Id": "acct-2"}).status_code == 404


def test_usage_endpoint_reports_limits(api) -> None:
    """Usage stats include global counters and the caller's standing."""
    a = api()
    a.post_sms("/sms/inbound", _inbound())

    body = a.client.get("/api/usage", headers=HEADERS).json()

    assert body["hourly_requests"] == 1
    assert body["limits"]["requests_per_minute"] == 10
    assert body["account"]["allowed"] is True


# ---------- web chat ----------

def test_web_chat_shares_pipeline_and_history(api) -> None:
    """Web messages get an inline reply and show up in the cross-channel history."""
    a = api()

    resp = a.client.post("/api/chat", json={"message": "hello from the app"}, headers=HEADERS)
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "replied"
    assert body["reply"] == "On it."
    assert body["run_id"] == "run-1"
    assert a.provider.sent == []

    a.post_sms("/sms/inbound", _inbound(body="and from sms"))
    assert "Earlier on web chat:" in a.agent.calls[-1][0]

    turns = a.client.get("/api/chat/history", headers=HEADERS).json()["turns"]
    assert [(t["channel"], t["role"]) for t in turns] == [
        ("web", "user"), ("web", "assistant"), ("sms", "user"), ("sms", "assistant"),
    ]
    with session_scope(a.session_factory) as db:
        assert db.query(ConversationTurn).count() == 4


def test_web_chat_rejects_empty_message(api) -> None:
    """Blank chat messages are a client error."""
    a = api()
    assert a.client.post("/api/chat", json={"message": "  "}, headers=HEADERS).status_code == 400


def test_health(api) -> None:
    """Health endpoints answer without touching collaborators."""
    a = api()
    assert a.client.get("/healthz").json() == {"ok": True}
    assert a.client.get("/health").json()["ok"] is True
