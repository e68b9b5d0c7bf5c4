from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from conftest import T0, seed_conversation, text_message
from salesbot.main import app
from salesbot.routers import webhook as webhook_router
from salesbot.services.llm import LLMResponse, PermanentProviderError

PHONE = "254712345678"


@pytest.fixture
def client(runtime):
    app.state.runtime = runtime
    yield TestClient(app)
    app.state.runtime = None


def _envelope(message: dict, name: str = "Jane") -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "contacts": [{"wa_id": message["from"], "profile": {"name": name}}],
                            "messages": [message],
                        },
                    }
                ],
            }
        ],
    }


class TestWebhookVerify:
    def test_handshake(self, client):
        response = client.get(
            "/webhook", params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "42"}
        )
        assert response.status_code == 200
        assert response.text == "42"

    def test_wrong_token(self, client):
        response = client.get(
            "/webhook", params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "42"}
        )
        assert response.status_code == 403


class TestWebhookReceive:
    def test_text_message_processed(self, client, runtime, provider, transport):
        provider.responses = [LLMResponse(content="Hello Jane!", model="fake")]
        message = {"from": PHONE, "id": "wamid.1", "type": "text", "text": {"body": "hi"}}

        response = client.post("/webhook", json=_envelope(message))

        assert response.status_code == 200
        session = runtime.store.require(PHONE)
        assert session.display_name == "Jane"
        assert [m.text for m in session.messages] == ["hi", "Hello Jane!"]
        assert transport.sent[0]["body"] == "Hello Jane!"

    def test_status_callback_ignored(self, client, runtime):
        body = {"object": "whatsapp_business_account", "entry": [{"changes": [{"value": {"statuses": [{}]}}]}]}

        response = client.post("/webhook", json=body)

        assert response.status_code == 200
        assert runtime.store.list_sessions() == []

    def test_garbage_payload_acknowledged(self, client):
        response = client.post("/webhook", content=b"not json", headers={"content-type": "application/json"})
        assert response.status_code == 200

    def test_processing_error_still_acknowledged(self, client, runtime, monkeypatch):
        monkeypatch.setattr(runtime.orchestrator, "handle_inbound", AsyncMock(side_effect=RuntimeError("boom")))
        message = {"from": PHONE, "id": "wamid.1", "type": "text", "text": {"body": "hi"}}

        response = client.post("/webhook", json=_envelope(message))

        assert response.status_code == 200

    def test_background_task_scheduled(self, client, monkeypatch):
        scheduled = AsyncMock()
        monkeypatch.setattr(webhook_router, "process_inbound_event", scheduled)
        message = {"from": PHONE, "id": "wamid.9", "type": "text", "text": {"body": "hi"}}

        client.post("/webhook", json=_envelope(message))

        event = scheduled.await_args.args[1]
        assert event.message_id == "wamid.9"
        assert event.sender_id == PHONE


class TestChats:
    def test_list_sorted_camel_case(self, client, runtime):
        seed_conversation(runtime.store, "a", 1)
        runtime.store.get_or_create("b")
        runtime.store.append_message("b", text_message("b-1", "later", at=T0 + timedelta(hours=1)))

        body = client.get("/api/chats").json()

        assert [c["id"] for c in body] == ["b", "a"]
        assert {"displayName", "lastMessageTime", "unreadCount", "botActive", "isEscalated"} <= set(body[0])

    def test_get_unknown(self, client):
        assert client.get("/api/chats/missing").status_code == 404

    def test_toggle_bot_releases_escalation(self, client, runtime):
        runtime.store.get_or_create(PHONE)
        runtime.store.lock_for_escalation(PHONE)

        response = client.post(f"/api/chat/{PHONE}/toggle-bot", json={"active": True})

        assert response.json() == {"success": True, "botActive": True, "isEscalated": False}

    def test_toggle_unknown(self, client):
        assert client.post("/api/chat/missing/toggle-bot", json={"active": False}).status_code == 404

    def test_send_message(self, client, runtime, transport):
        response = client.post("/api/send-message", json={"to": PHONE, "text": "Karibu!"})

        assert response.status_code == 200
        assert response.json()["message"]["sender"] == "human_operator"
        assert transport.sent == [{"to": PHONE, "type": "text", "body": "Karibu!"}]

    def test_send_message_failure(self, client, transport):
        transport.fail = True
        response = client.post("/api/send-message", json={"to": PHONE, "text": "Karibu!"})
        assert response.status_code == 500


class TestProducts:
    def test_list(self, client):
        body = client.get("/api/products").json()
        assert [p["id"] for p in body] == ["milk-100", "water-auto"]
        assert body[0]["priceRange"] == {"min": 30000.0, "max": 35000.0}

    def test_replace(self, client, runtime):
        payload = {
            "products": [
                {
                    "id": "oil-50",
                    "category": "Oil ATM",
                    "name": "50L Oil ATM",
                    "priceRange": {"min": 20000, "max": 25000},
                    "images": [],
                }
            ]
        }
        response = client.post("/api/products", json=payload)

        assert response.json() == {"success": True, "count": 1}
        assert runtime.inventory.snapshot().find("oil-50") is not None
        assert runtime.inventory.snapshot().find("milk-100") is None

    def test_rejects_inverted_price_range(self, client):
        payload = {"products": [{"id": "x", "category": "c", "name": "n", "priceRange": {"min": 5, "max": 1}}]}
        assert client.post("/api/products", json=payload).status_code == 422


class TestSettings:
    def test_secrets_not_echoed(self, client):
        response = client.post("/api/settings", json={"accessToken": "secret", "phoneNumberId": "555"})

        body = response.json()
        assert body["phoneNumberId"] == "555"
        assert "secret" not in response.text
        assert client.get("/api/settings").json()["phoneNumberId"] == "555"

    def test_verify_config(self, client):
        response = client.post("/api/verify-meta-config", json={"accessToken": "good-token", "phoneNumberId": "1"})
        assert response.json() == {"valid": True}

    def test_verify_config_requires_values(self, client):
        assert client.post("/api/verify-meta-config", json={}).status_code == 400


class TestLeadsAndQueue:
    def test_analyze_leads(self, client, runtime, provider):
        seed_conversation(runtime.store, "254700000001", 4)
        provider.json_responses = [
            {
                "serious": [{"phone": "254700000001", "name": "Alice", "reason": "ready"}],
                "stalled": [],
                "visiting": [],
                "followUp": [],
            }
        ]

        body = client.post("/api/analyze-leads").json()

        assert body["serious"][0]["phone"] == "254700000001"
        assert body["analyzedSessions"] == 1
        assert client.get("/api/leads").json()["serious"][0]["reason"] == "ready"

    def test_analyze_leads_failure(self, client, runtime, provider):
        seed_conversation(runtime.store, "254700000001", 4)
        provider.json_responses = [PermanentProviderError("bad")]

        assert client.post("/api/analyze-leads?force=true").status_code == 502

    def test_retry_queue(self, client, runtime, provider, transport):
        runtime.store.get_or_create(PHONE)
        runtime.retry_queue.enqueue(session_id=PHONE, parts=[{"text": "hi"}], source_message_id="wamid.1")

        listed = client.get("/api/retry-queue").json()
        assert listed[0]["sessionId"] == PHONE

        body = client.post("/api/retry-queue/process").json()
        assert body["delivered"] == 1
        assert client.get("/api/retry-queue").json() == []


class TestHealth:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["inferenceConfigured"] is True
