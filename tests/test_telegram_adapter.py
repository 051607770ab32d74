from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import BadRequest, Forbidden, NetworkError, RetryAfter, TimedOut

from signalrelay.config import settings
from signalrelay.domain.errors import DeliveryError, PermanentDeliveryError, TransientDeliveryError
from signalrelay.infrastructure.notify.telegram import TelegramChannelAdapter, classify_telegram_error


@pytest.mark.parametrize("exc,expected", [
    (Forbidden("Forbidden: bot was blocked by the user"), PermanentDeliveryError),
    (BadRequest("Chat not found"), PermanentDeliveryError),
    (BadRequest("User is deactivated"), PermanentDeliveryError),
    (BadRequest("Message text is empty"), DeliveryError),
    (TimedOut(), TransientDeliveryError),
    (NetworkError("Bad Gateway"), TransientDeliveryError),
])
def test_classify_telegram_error(exc, expected):
    err = classify_telegram_error(exc, "12345")
    assert type(err) is expected
    assert err.destination == "12345"


def test_flood_wait_is_transient_with_retry_after():
    err = classify_telegram_error(RetryAfter(5), "1")
    assert isinstance(err, TransientDeliveryError)
    assert err.retry_after == 5.0


def test_adapter_requires_a_token():
    with pytest.raises(ValueError):
        TelegramChannelAdapter(bot_token="")


@pytest.fixture
def bot():
    mock_bot = MagicMock()
    mock_bot.send_message = AsyncMock(return_value=SimpleNamespace(message_id=42))
    mock_bot.edit_message_text = AsyncMock()
    return mock_bot


@pytest.mark.asyncio
async def test_send_message_returns_message_id(bot):
    adapter = TelegramChannelAdapter(bot=bot)
    assert await adapter.send_message(777, "<b>hi</b>") == 42
    kwargs = bot.send_message.await_args.kwargs
    assert kwargs["chat_id"] == 777
    assert kwargs["parse_mode"] == "HTML"
    assert kwargs["disable_web_page_preview"] is True


@pytest.mark.asyncio
async def test_send_message_translates_errors(bot):
    bot.send_message.side_effect = Forbidden("Forbidden: bot was blocked by the user")
    adapter = TelegramChannelAdapter(bot=bot)
    with pytest.raises(PermanentDeliveryError):
        await adapter.send_message(777, "hi")


@pytest.mark.asyncio
async def test_edit_message_treats_not_modified_as_success(bot):
    bot.edit_message_text.side_effect = BadRequest("Message is not modified: specified new message content is the same")
    adapter = TelegramChannelAdapter(bot=bot)
    assert await adapter.edit_message(777, 5, "same text") is True


@pytest.mark.asyncio
async def test_edit_message_raises_on_other_errors(bot):
    bot.edit_message_text.side_effect = BadRequest("Message to edit not found")
    adapter = TelegramChannelAdapter(bot=bot)
    with pytest.raises(DeliveryError):
        await adapter.edit_message(777, 5, "text")


@pytest.mark.asyncio
async def test_admin_alert_is_skipped_without_admin_chat(bot, monkeypatch):
    monkeypatch.setattr(settings, "TELEGRAM_ADMIN_CHAT_ID", None)
    await TelegramChannelAdapter(bot=bot).send_admin_alert("hello")
    bot.send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_admin_alert_failure_is_swallowed(bot, monkeypatch):
    monkeypatch.setattr(settings, "TELEGRAM_ADMIN_CHAT_ID", "-100123")
    bot.send_message.side_effect = NetworkError("Connection reset")
    await TelegramChannelAdapter(bot=bot).send_admin_alert("hello")
    assert bot.send_message.await_args.kwargs["chat_id"] == "-100123"
