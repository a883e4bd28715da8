"""Tests for delivery channels."""

import json
import smtplib
import uuid

import httpx
import pytest

from app.services.channels import (
    DeliveryChannel,
    DeliveryContext,
    EmailChannel,
    TelegramChannel,
    dispatch_to_channels,
    dispatch_with_timeout,
)

from conftest import RecordingChannel


def make_context(**overrides) -> DeliveryContext:
    values = {
        "hotel_id": uuid.uuid4(),
        "hotel_name": "Grand Almaty",
        "subject": "Daily expiry report",
        "telegram_chat_ids": ("111", "222"),
        "email_recipients": ("chef@example.com",),
    }
    values.update(overrides)
    return DeliveryContext(**values)


class TestChannelContract:
    def test_channel_without_send_cannot_be_built(self):
        class SilentChannel(DeliveryChannel):
            name = "silent"

        with pytest.raises(TypeError):
            SilentChannel()

    def test_concrete_channels_build(self):
        assert isinstance(TelegramChannel(), DeliveryChannel)
        assert isinstance(EmailChannel(), DeliveryChannel)
        assert isinstance(RecordingChannel("pager"), DeliveryChannel)


class TestTelegramChannel:
    @pytest.mark.asyncio
    async def test_posts_to_every_chat(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})

        channel = TelegramChannel(bot_token="TOKEN", transport=httpx.MockTransport(handler))
        result = await channel.send(make_context(), "hello")

        assert result.success
        assert result.detail == "Sent to 2 chat(s)"
        assert [r.url.path for r in requests] == ["/botTOKEN/sendMessage"] * 2
        assert [json.loads(r.content)["chat_id"] for r in requests] == ["111", "222"]
        assert json.loads(requests[0].content)["text"] == "hello"

    @pytest.mark.asyncio
    async def test_api_error_on_one_chat_fails_the_result(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if json.loads(request.content)["chat_id"] == "222":
                return httpx.Response(400, json={"ok": False, "description": "Bad Request: chat not found"})
            return httpx.Response(200, json={"ok": True})

        channel = TelegramChannel(bot_token="TOKEN", transport=httpx.MockTransport(handler))
        result = await channel.send(make_context(), "hello")

        assert not result.success
        assert "Sent to 1/2 chats" in result.detail
        assert "chat not found" in result.detail

    @pytest.mark.asyncio
    async def test_network_error_is_a_failed_result(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        channel = TelegramChannel(bot_token="TOKEN", transport=httpx.MockTransport(handler))
        result = await channel.send(make_context(telegram_chat_ids=("111",)), "hello")

        assert not result.success
        assert "connection refused" in result.detail

    @pytest.mark.asyncio
    async def test_not_configured(self):
        assert not (await TelegramChannel(bot_token="").send(make_context(), "hi")).success
        result = await TelegramChannel(bot_token="TOKEN").send(make_context(telegram_chat_ids=()), "hi")
        assert not result.success
        assert "No Telegram chats" in result.detail


class TestEmailChannel:
    @pytest.mark.asyncio
    async def test_sends_to_recipients(self, monkeypatch):
        sent = []
        channel = EmailChannel(smtp_user="bot@example.com")
        monkeypatch.setattr(channel, "_send_sync", lambda recipients, subject, text: sent.append((recipients, subject, text)))

        result = await channel.send(make_context(), "report body")

        assert result.success
        assert sent == [(("chef@example.com",), "Daily expiry report", "report body")]

    @pytest.mark.asyncio
    async def test_smtp_error_is_a_failed_result(self, monkeypatch):
        def refuse(*args):
            raise smtplib.SMTPException("relay denied")

        channel = EmailChannel(smtp_user="bot@example.com")
        monkeypatch.setattr(channel, "_send_sync", refuse)

        result = await channel.send(make_context(), "report body")
        assert not result.success
        assert "relay denied" in result.detail

    @pytest.mark.asyncio
    async def test_not_configured(self):
        assert not (await EmailChannel().send(make_context(), "hi")).success
        result = await EmailChannel(from_email="bot@example.com").send(make_context(email_recipients=()), "hi")
        assert not result.success


class TestDispatch:
    @pytest.mark.asyncio
    async def test_timeout_becomes_failed_result(self):
        result = await dispatch_with_timeout(RecordingChannel("slow", delay=1.0), make_context(), "hi", timeout=0.05)
        assert not result.success
        assert result.detail.startswith("Timed out")

    @pytest.mark.asyncio
    async def test_results_per_channel(self):
        channels = {
            "ok": RecordingChannel("ok"),
            "broken": RecordingChannel("broken", error=ValueError("bad payload")),
        }
        results = await dispatch_to_channels(channels, make_context(), "hi", timeout=1.0)

        assert results["ok"] == {"success": True, "detail": "ok"}
        assert results["broken"] == {"success": False, "detail": "ValueError: bad payload"}
