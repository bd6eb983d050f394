"""HTTP surface, exercised through the FastAPI TestClient."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from app import create_app
from autoresponder.auth import AuthCodeProvider
from autoresponder.config import settings
from autoresponder.document_store import InMemoryDocumentStore
from autoresponder.services import build_services

from .helpers import CONTACT, FakeLlm, FakeSpeech, TransportFactoryStub

PNG_QR = "data:image/png;base64,iVBORw0KGgo="
API_KEY = "test-api-key-123"


@pytest.fixture
def factory():
    return TransportFactoryStub()


@pytest.fixture
def services(factory):
    return build_services(
        store=InMemoryDocumentStore(),
        transport_factory=factory,
        llm=FakeLlm(),
        speech=FakeSpeech(),
        auth=AuthCodeProvider(source_url="", static_codes=["alpha-code", "beta-code"]),
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as client:
        yield client


@pytest.fixture
def started(client):
    assert client.post("/auth", json={"code": "alpha-code"}).status_code == 200
    return client


def _send_at(seconds):
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat()


def _seed_contact(client, services, *texts):
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    entries = [{"message": text, "timestamp": base + timedelta(seconds=i)} for i, text in enumerate(texts)]
    client.portal.call(services.store.append_contact_messages, "alpha-code", CONTACT, entries)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------
class TestSessions:
    def test_start_session(self, client, factory):
        response = client.post("/auth", json={"code": " alpha-code "})

        assert response.status_code == 200
        assert response.json() == {"success": True, "ready": True}
        assert factory.last.session_code == "alpha-code"

    def test_start_session_is_idempotent(self, started, factory):
        assert started.post("/auth", json={"code": "alpha-code"}).status_code == 200
        assert len(factory.created) == 1

    def test_unknown_code_is_rejected(self, client):
        response = client.post("/auth", json={"code": "nope"})
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid code"}

    def test_code_is_required(self, client):
        response = client.post("/auth", json={"code": "   "})
        assert response.status_code == 400
        assert response.json() == {"error": "Code is required"}

    def test_status(self, started):
        response = started.get("/auth/alpha-code/status")
        assert response.json() == {"active": True, "ready": True, "status": "ready"}

        missing = started.get("/auth/beta-code/status")
        assert missing.status_code == 404
        assert missing.json() == {"error": "No active session"}

    def test_end_session_with_logout(self, started, factory):
        response = started.delete("/auth/alpha-code", params={"logout": "true"})

        assert response.json() == {"success": True}
        assert factory.last.logged_out
        assert factory.last.closed
        assert started.delete("/auth/alpha-code").status_code == 404

    def test_end_session_without_logout_keeps_pairing(self, started, factory):
        assert started.delete("/auth/alpha-code").status_code == 200
        assert not factory.last.logged_out


class TestQr:
    def test_valid_qr_is_returned(self, started, services):
        services.manager.get_session("alpha-code").qr = PNG_QR
        assert started.get("/qr/alpha-code").json() == {"qr": PNG_QR, "ready": True}

    def test_malformed_qr_is_hidden(self, started, services):
        services.manager.get_session("alpha-code").qr = "<svg>not a data uri</svg>"
        assert started.get("/qr/alpha-code").json()["qr"] is None

    def test_missing_session(self, client):
        response = client.get("/qr/alpha-code")
        assert response.status_code == 404
        assert response.json() == {"error": "No session found"}


# ---------------------------------------------------------------------------
# AI configuration
# ---------------------------------------------------------------------------
class TestAiConfig:
    def test_defaults_before_configuration(self, started):
        config = started.get("/ai/alpha-code").json()["config"]

        assert config["hasApiKey"] is False
        assert config["contextWindow"] == 50
        assert config["autoReplyEnabled"] is True
        assert config["customReplies"] == []

    def test_configure_and_persist(self, started, services):
        response = started.post(
            "/ai/alpha-code",
            json={
                "apiKey": API_KEY,
                "model": " gemini-test ",
                "systemPrompt": "  Be brief.  ",
                "contextWindow": 5,
                "customReplies": [{"trigger": "price", "response": "10 USD", "matchType": "contains"}],
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["config"]["contextWindow"] == 10
        assert body["config"]["model"] == "gemini-test"
        assert body["config"]["systemPrompt"] == "Be brief."
        assert body["persisted"]["hasApiKey"] is True
        assert body["persisted"]["model"] == "gemini-test"
        assert body["persisted"]["updatedAt"]

        stored = services.store.configs["alpha-code"]
        assert stored["credentials"]["gemini"]["apiKey"] == API_KEY
        assert started.get("/ai/alpha-code").json()["config"]["hasApiKey"] is True

    def test_api_key_is_required(self, started):
        response = started.post("/ai/alpha-code", json={"model": "gemini-test"})
        assert response.status_code == 400
        assert response.json() == {"error": "API key is required"}

    def test_stored_key_can_be_reused(self, started):
        started.post("/ai/alpha-code", json={"apiKey": API_KEY, "model": "gemini-test"})

        response = started.post(
            "/ai/alpha-code", json={"reuseStoredApiKey": "true", "model": "gemini-next", "autoReplyEnabled": "false"}
        )

        config = response.json()["config"]
        assert config["apiKey"] == API_KEY
        assert config["model"] == "gemini-next"
        assert config["autoReplyEnabled"] is False

    @pytest.mark.parametrize(
        "payload",
        [
            {"apiKey": "short", "model": "gemini-test"},
            {"apiKey": API_KEY},
            {"apiKey": API_KEY, "model": "   "},
        ],
    )
    def test_invalid_payloads(self, started, payload):
        response = started.post("/ai/alpha-code", json=payload)

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Invalid request payload"
        assert body["details"]

    def test_unknown_session(self, client):
        response = client.post("/ai/alpha-code", json={"apiKey": API_KEY, "model": "gemini-test"})
        assert response.status_code == 404

    def test_custom_replies_update(self, started, services):
        response = started.post(
            "/ai/alpha-code/replies",
            json={"customReplies": [{"trigger": " hours ", "response": "9 to 5", "matchType": "exact"}]},
        )

        assert response.status_code == 200
        assert response.json()["customReplies"] == [{"trigger": "hours", "response": "9 to 5", "matchType": "exact"}]
        assert services.manager.get_session("alpha-code").ai_config.custom_replies[0].trigger == "hours"

    def test_custom_reply_match_type_is_checked(self, started):
        response = started.post(
            "/ai/alpha-code/replies",
            json={"customReplies": [{"trigger": "a", "response": "b", "matchType": "fuzzy"}]},
        )
        assert response.status_code == 400


# ---------------------------------------------------------------------------
# Outbound messages
# ---------------------------------------------------------------------------
class TestMessages:
    def test_bulk_send(self, started, factory):
        factory.last.fail_send_to.add("15557654321@c.us")

        response = started.post(
            "/messages/alpha-code/bulk",
            json={"message": " Shop opens at 9 ", "numbers": ["+15551234567", "15557654321"]},
        )

        body = response.json()
        assert body["success"] is True
        assert body["total"] == 2
        assert body["sent"] == 1
        assert body["failed"] == 1
        assert factory.last.sent == [("15551234567@c.us", "Shop opens at 9", None)]

    def test_bulk_send_rejects_bad_numbers(self, started):
        response = started.post("/messages/alpha-code/bulk", json={"message": "hi", "numbers": ["abc"]})
        assert response.status_code == 400

    def test_schedule_lifecycle(self, started):
        created = started.post(
            "/messages/alpha-code/schedule",
            json={"message": "Reminder", "numbers": ["15551234567"], "sendAt": _send_at(3600)},
        )

        assert created.status_code == 201
        job = created.json()["job"]
        assert job["status"] == "scheduled"
        assert job["numbers"] == ["15551234567@c.us"]

        jobs = started.get("/messages/alpha-code/schedule").json()["jobs"]
        assert [item["id"] for item in jobs] == [job["id"]]

        cancelled = started.delete(f"/messages/alpha-code/schedule/{job['id']}").json()
        assert cancelled["job"]["status"] == "cancelled"
        assert cancelled["removed"] is False

        removed = started.delete(f"/messages/alpha-code/schedule/{job['id']}", params={"remove": "true"}).json()
        assert removed["removed"] is True
        assert started.get("/messages/alpha-code/schedule").json()["jobs"] == []

    def test_schedule_too_soon(self, started):
        response = started.post(
            "/messages/alpha-code/schedule",
            json={"message": "Reminder", "numbers": ["15551234567"], "sendAt": _send_at(2)},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Schedule time must be at least 10 seconds in the future"}

    def test_unknown_job(self, started):
        response = started.delete("/messages/alpha-code/schedule/missing")
        assert response.status_code == 404
        assert response.json() == {"error": "Scheduled message not found"}


# ---------------------------------------------------------------------------
# Persona corpus
# ---------------------------------------------------------------------------
class TestPersona:
    def test_contacts_and_contact_view(self, started, services):
        _seed_contact(started, services, "User: hi", "My reply: hey!", "AI reply: hello", "User: ok")

        contacts = started.get("/persona/alpha-code/contacts").json()
        assert contacts["total"] == 1
        assert contacts["contacts"][0]["contactId"] == CONTACT

        view = started.get(f"/persona/alpha-code/contact/{CONTACT}").json()
        assert view["total"] == 4
        assert (view["userMessages"], view["myReplies"], view["aiReplies"]) == (2, 1, 1)
        assert view["messages"][1]["id"] == 1
        assert view["messages"][1]["message"] == "My reply: hey!"

    def test_edit_and_delete_contact_messages(self, started, services):
        _seed_contact(started, services, "User: hi", "My reply: hey!")

        edited = started.put(f"/persona/alpha-code/contact/{CONTACT}/message/1", json={"message": "My reply: hi there"})
        assert edited.json()["message"]["message"] == "My reply: hi there"

        deleted = started.delete(f"/persona/alpha-code/contact/{CONTACT}/message/0")
        assert deleted.json() == {"success": True, "remainingMessages": 1}

    def test_bad_and_missing_indexes(self, started, services):
        _seed_contact(started, services, "User: hi")

        bad = started.delete(f"/persona/alpha-code/contact/{CONTACT}/message/abc")
        assert bad.status_code == 400
        assert bad.json() == {"error": "Invalid message index"}

        missing = started.delete(f"/persona/alpha-code/contact/{CONTACT}/message/5")
        assert missing.status_code == 404

    def test_universal_corpus(self, started, services):
        started.portal.call(services.store.append_universal_messages, "alpha-code", ["sure", "on my way"])

        view = started.get("/persona/alpha-code/universal").json()
        assert view == {"total": 2, "messages": [{"id": 0, "message": "sure"}, {"id": 1, "message": "on my way"}]}

        assert started.put("/persona/alpha-code/universal/message/0", json={"message": "yep"}).json()["message"] == "yep"
        assert started.delete("/persona/alpha-code/universal/message/1").json()["remainingMessages"] == 1

    def test_requires_session(self, client):
        response = client.get("/persona/alpha-code/contacts")
        assert response.status_code == 404
        assert response.json() == {"error": "Session not found"}


# ---------------------------------------------------------------------------
# Webhooks and health
# ---------------------------------------------------------------------------
WEBHOOK_HEADERS = {"X-Webhook-Secret": settings.EVOLUTION_WEBHOOK_SECRET}
FORGED_STOPALL = {
    "event": "messages.upsert",
    "data": {
        "key": {"id": "FORGED1", "remoteJid": "15551234567@s.whatsapp.net", "fromMe": True},
        "messageType": "conversation",
        "message": {"conversation": "!stopall"},
        "messageTimestamp": 1_700_000_000,
    },
}


def test_webhook_is_dispatched_to_the_transport(started, factory):
    event = {"event": "connection.update", "data": {"state": "open"}}

    response = started.post("/webhooks/evolution/alpha-code", json=event, headers=WEBHOOK_HEADERS)

    assert response.json() == {"received": True}
    assert factory.last.events == [event]


def test_webhook_for_unknown_session(client):
    response = client.post("/webhooks/evolution/ghost", json={"event": "messages.upsert"}, headers=WEBHOOK_HEADERS)
    assert response.status_code == 404


@pytest.mark.parametrize("headers", [{}, {"X-Webhook-Secret": "guess"}, {"X-Webhook-Secret": ""}])
def test_webhook_without_the_secret_is_rejected(started, factory, headers):
    unpair = {"event": "connection.update", "data": {"state": "close", "statusReason": 401}}

    response = started.post("/webhooks/evolution/alpha-code", json=unpair, headers=headers)

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}
    assert factory.last.events == []
    assert started.get("/auth/alpha-code/status").json()["ready"] is True


def test_forged_owner_message_never_reaches_the_session(started, services, factory):
    response = started.post(
        "/webhooks/evolution/alpha-code", json=FORGED_STOPALL, headers={"X-Webhook-Secret": "wrong-secret"}
    )

    assert response.status_code == 401
    assert factory.last.events == []
    assert not services.manager.get_session("alpha-code").global_stop.active


def test_unknown_session_is_not_revealed_without_the_secret(client):
    assert client.post("/webhooks/evolution/ghost", json=FORGED_STOPALL).status_code == 401


def test_production_requires_a_configured_secret(started, factory, monkeypatch):
    monkeypatch.setattr(settings, "EVOLUTION_WEBHOOK_SECRET", "")
    monkeypatch.setattr(settings, "ENVIRONMENT", "production")

    response = started.post("/webhooks/evolution/alpha-code", json=FORGED_STOPALL)

    assert response.status_code == 401
    assert factory.last.events == []


def test_development_without_a_secret_accepts_events(started, factory, monkeypatch):
    monkeypatch.setattr(settings, "EVOLUTION_WEBHOOK_SECRET", "")
    monkeypatch.setattr(settings, "ENVIRONMENT", "development")
    event = {"event": "connection.update", "data": {"state": "open"}}

    assert started.post("/webhooks/evolution/alpha-code", json=event).status_code == 200
    assert factory.last.events == [event]


def test_health(started, services):
    body = started.get("/health").json()

    assert body["status"] == "ok"
    assert body["sessions"] == 1
    assert body["readySessions"] == 1
    assert body["uptime"] >= 0
