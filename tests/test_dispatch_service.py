import asyncio

import pytest

from conftest import FakeTransport, text_message
from salesbot.schemas.chat import MessageType, Sender
from salesbot.services.dispatch_service import Dispatcher
from salesbot.services.tool_interpreter import StagedImage, TurnPlan
from salesbot.services.whatsapp_service import DispatchError


def _dispatcher(store, transport):
    return Dispatcher(store, transport, public_base_url="https://bot.example.com/", send_delay_seconds=0.001)


class TestDeliver:
    def test_images_before_text(self, store):
        transport = FakeTransport()
        store.get_or_create("s1")
        plan = TurnPlan(
            text="Here are the photos",
            images=(
                StagedImage("milk-100", 0, "https://cdn.example.com/milk-1.jpg"),
                StagedImage("milk-100", 1, "https://cdn.example.com/milk-2.jpg"),
            ),
        )

        recorded = asyncio.run(_dispatcher(store, transport).deliver("s1", plan))

        assert [s["type"] for s in transport.sent] == ["image", "image", "text"]
        session = store.require("s1")
        assert [m.type for m in session.messages] == [MessageType.IMAGE, MessageType.IMAGE, MessageType.TEXT]
        assert all(m.sender == Sender.BOT for m in session.messages)
        timestamps = [m.timestamp for m in session.messages]
        assert timestamps == sorted(timestamps)
        assert [m.id for m in recorded] == ["wamid.out1", "wamid.out2", "wamid.out3"]

    def test_stored_image_gets_render_link(self, store):
        transport = FakeTransport()
        store.get_or_create("s1")
        plan = TurnPlan(images=(StagedImage("water-auto", 0, "data:image/png;base64,aGVsbG8="),))

        asyncio.run(_dispatcher(store, transport).deliver("s1", plan))

        assert transport.sent[0]["link"] == "https://bot.example.com/api/render-image/water-auto/0"
        assert store.require("s1").messages[0].image == "https://bot.example.com/api/render-image/water-auto/0"

    def test_failure_keeps_already_sent(self, store):
        class FailOnText(FakeTransport):
            async def send_text(self, to, body):
                raise DispatchError("down")

        transport = FailOnText()
        store.get_or_create("s1")
        plan = TurnPlan(text="hi", images=(StagedImage("milk-100", 0, "https://cdn/1.jpg"),))

        with pytest.raises(DispatchError):
            asyncio.run(_dispatcher(store, transport).deliver("s1", plan))

        assert [m.type for m in store.require("s1").messages] == [MessageType.IMAGE]

    def test_rejects_non_positive_delay(self, store):
        with pytest.raises(ValueError):
            Dispatcher(store, FakeTransport(), public_base_url="x", send_delay_seconds=0)


class TestHumanReply:
    def test_records_operator_and_clears_unread(self, store):
        store.get_or_create("s1")
        store.append_message("s1", text_message("m1", "hello"))

        message = asyncio.run(_dispatcher(store, FakeTransport()).send_human_reply("s1", "Karibu!"))

        session = store.require("s1")
        assert message.sender == Sender.HUMAN_OPERATOR
        assert session.unread_count == 0
        assert session.last_message == "Karibu!"

    def test_creates_session_for_new_contact(self, store):
        asyncio.run(_dispatcher(store, FakeTransport()).send_human_reply("254711000000", "Hello"))
        assert store.require("254711000000").display_name == "Client 254711000000"

    def test_failure_records_nothing(self, store):
        store.get_or_create("s1")
        with pytest.raises(DispatchError):
            asyncio.run(_dispatcher(store, FakeTransport(fail=True)).send_human_reply("s1", "Hello"))
        assert store.require("s1").messages == []
