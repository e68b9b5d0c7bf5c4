import asyncio
import json

import httpx
import pytest

from salesbot.services.settings_service import TransportSettingsStore, WhatsAppCredentials
from salesbot.services.whatsapp_service import DispatchError, WhatsAppClient

CREDS = WhatsAppCredentials(access_token="token", phone_number_id="123", verify_token="v")


def _client(handler, creds=CREDS):
    return WhatsAppClient(lambda: creds, transport=httpx.MockTransport(handler))


class TestSend:
    def test_send_text_payload(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": [{"id": "wamid.out"}]})

        message_id = asyncio.run(_client(handler).send_text("254700000001", "Hello"))

        assert message_id == "wamid.out"
        assert captured["url"] == "https://graph.facebook.com/v17.0/123/messages"
        assert captured["auth"] == "Bearer token"
        assert captured["body"] == {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": "254700000001",
            "type": "text",
            "text": {"body": "Hello"},
        }

    def test_send_image_by_link(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={})

        assert asyncio.run(_client(handler).send_image("254700000001", "https://cdn/x.jpg")) is None
        assert captured["body"]["image"] == {"link": "https://cdn/x.jpg"}

    def test_error_status_raises(self):
        client = _client(lambda request: httpx.Response(401, text="expired token"))
        with pytest.raises(DispatchError) as exc_info:
            asyncio.run(client.send_text("254700000001", "Hello"))
        assert exc_info.value.status_code == 401

    def test_not_configured(self):
        client = _client(lambda request: httpx.Response(200), creds=WhatsAppCredentials())
        assert client.configured is False
        with pytest.raises(DispatchError):
            asyncio.run(client.send_text("254700000001", "Hello"))


class TestMedia:
    def test_download_two_steps(self):
        def handler(request):
            if request.url.path.endswith("/media-1"):
                return httpx.Response(200, json={"url": "https://lookaside.example.com/file"})
            return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png; charset=binary"})

        assert asyncio.run(_client(handler).download_media("media-1")) == (b"\x89PNG", "image/png")

    def test_download_failure_returns_none(self):
        assert asyncio.run(_client(lambda request: httpx.Response(404)).download_media("media-1")) is None

    def test_non_json_metadata_returns_none(self):
        client = _client(lambda request: httpx.Response(200, text="<html>upstream proxy error</html>"))
        assert asyncio.run(client.download_media("media-1")) is None

    def test_mark_as_read_never_raises(self):
        def handler(request):
            raise httpx.ConnectError("offline", request=request)

        assert asyncio.run(_client(handler).mark_as_read("wamid.1")) is False


class TestTransportSettingsStore:
    def test_saved_values_override_environment(self, test_settings, session_factory):
        store = TransportSettingsStore(test_settings, session_factory)
        store.update(access_token="saved-token", phone_number_id="999", app_secret="")

        reloaded = TransportSettingsStore(test_settings, session_factory)
        creds = reloaded.load()

        assert creds.access_token == "saved-token"
        assert creds.phone_number_id == "999"
        assert creds.verify_token == "verify-me"
        assert "saved-token" not in json.dumps(creds.public_view())
