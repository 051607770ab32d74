# src/signalrelay/infrastructure/notify/telegram.py
"""
Telegram channel adapter.

A thin wrapper over python-telegram-bot's `Bot` that performs exactly one
API call per method and translates library errors into the delivery error
taxonomy. Retrying is the delivery pipeline's job, not this class's.

    Forbidden, "chat not found", "user is deactivated"  -> PermanentDeliveryError
    RetryAfter (flood wait), TimedOut, NetworkError/5xx  -> TransientDeliveryError
    any other BadRequest / TelegramError                 -> DeliveryError
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Union

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import BadRequest, Forbidden, NetworkError, RetryAfter, TelegramError, TimedOut
from telegram.request import HTTPXRequest

from signalrelay.config import settings
from signalrelay.domain.errors import DeliveryError, PermanentDeliveryError, TransientDeliveryError

log = logging.getLogger(__name__)

# BadRequest descriptions that mean the destination itself is gone
_UNREACHABLE_MARKERS = (
    "chat not found",
    "user is deactivated",
    "bot was blocked",
    "bot was kicked",
    "not enough rights to send",
    "have no rights to send",
    "peer_id_invalid",
)


def _retry_after_seconds(value: Union[int, float, timedelta, None]) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def classify_telegram_error(exc: Exception, destination: str) -> DeliveryError:
    """Maps a python-telegram-bot exception onto the delivery error taxonomy."""
    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, Forbidden):
        return PermanentDeliveryError(message, destination)
    if isinstance(exc, BadRequest):
        # BadRequest subclasses NetworkError, so it must be checked first
        if any(marker in message.lower() for marker in _UNREACHABLE_MARKERS):
            return PermanentDeliveryError(message, destination)
        return DeliveryError(message, destination)
    if isinstance(exc, RetryAfter):
        return TransientDeliveryError(message, destination, retry_after=_retry_after_seconds(exc.retry_after))
    if isinstance(exc, (TimedOut, NetworkError, asyncio.TimeoutError)):
        return TransientDeliveryError(message, destination)
    return DeliveryError(message, destination)


class TelegramChannelAdapter:
    """Sends and edits chat messages; raises DeliveryError subclasses on failure."""

    def __init__(self, bot_token: Optional[str] = None, bot: Optional[Bot] = None):
        if bot is not None:
            self.bot = bot
        else:
            token = bot_token or settings.TELEGRAM_BOT_TOKEN
            if not token:
                raise ValueError("Telegram bot token is required")
            # Reuse one pooled connection set for every concurrent send.
            request = HTTPXRequest(
                connection_pool_size=max(20, settings.DELIVERY_CONCURRENCY * 2),
                read_timeout=10.0,
                write_timeout=10.0,
                connect_timeout=5.0,
            )
            self.bot = Bot(token=token, request=request)
        self._bot_username: Optional[str] = None

    async def start(self) -> None:
        try:
            await self.bot.initialize()
            me = await self.bot.get_me()
            self._bot_username = me.username
            log.info(f"Telegram adapter ready: @{self._bot_username}")
        except TelegramError as e:
            log.error(f"Failed to get bot info: {e}")

    async def stop(self) -> None:
        try:
            await self.bot.shutdown()
        except TelegramError as e:
            log.warning(f"Bot shutdown raised: {e}")

    @staticmethod
    def _options(format_options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        opts = {"parse_mode": ParseMode.HTML, "disable_web_page_preview": True}
        if format_options:
            opts.update(format_options)
        return opts

    async def send_message(
        self,
        destination: Union[int, str],
        text: str,
        format_options: Optional[Dict[str, Any]] = None,
    ) -> int:
        try:
            msg = await self.bot.send_message(chat_id=destination, text=text, **self._options(format_options))
        except TelegramError as e:
            raise classify_telegram_error(e, str(destination)) from e
        return msg.message_id

    async def edit_message(
        self,
        destination: Union[int, str],
        message_id: int,
        text: str,
        format_options: Optional[Dict[str, Any]] = None,
    ) -> bool:
        try:
            await self.bot.edit_message_text(
                chat_id=destination, message_id=message_id, text=text, **self._options(format_options)
            )
            return True
        except TelegramError as e:
            if "message is not modified" in str(e).lower():
                return True
            raise classify_telegram_error(e, str(destination)) from e

    async def send_admin_alert(self, text: str) -> None:
        """Best-effort notice to the operator chat; failures are only logged."""
        if not settings.TELEGRAM_ADMIN_CHAT_ID:
            return
        try:
            await self.send_message(settings.TELEGRAM_ADMIN_CHAT_ID, f"🚨 <b>SYSTEM ALERT</b>\n{text}")
        except DeliveryError as e:
            log.warning(f"Admin alert not delivered: {e}")
