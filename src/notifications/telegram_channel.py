"""Telegram implementation of the NotificationChannel protocol."""

from __future__ import annotations

import logging

import telegram
from telegram.error import BadRequest, Forbidden, RetryAfter, TelegramError

from src.scheduler.errors import DeliveryError, ErrorCode

logger = logging.getLogger(__name__)


def _chat_id(target: str) -> int | str:
    """Numeric ids go to the API as ints; ``@channel`` usernames stay strings."""
    stripped = target.strip()
    if stripped.lstrip("-").isdigit():
        return int(stripped)
    return stripped


class TelegramChannel:
    """Publishes posts via the Telegram Bot API.

    Telegram errors are translated into DeliveryError codes so the dispatch
    queue can decide whether to retry.
    """

    def __init__(self, bot: telegram.Bot, parse_mode: str | None = "Markdown") -> None:
        self._bot = bot
        self._parse_mode = parse_mode

    @property
    def name(self) -> str:
        return "telegram"

    async def send(self, target: str, message: str) -> str | None:
        """Send a text message to a Telegram chat or channel."""
        try:
            sent = await self._bot.send_message(
                chat_id=_chat_id(target), text=message, parse_mode=self._parse_mode
            )
        except RetryAfter as exc:
            msg = f"Telegram rate limit hit, retry after {exc.retry_after}s"
            raise DeliveryError(msg, ErrorCode.RATE_LIMITED) from exc
        except Forbidden as exc:
            msg = f"Bot cannot post to {target}: {exc.message}"
            raise DeliveryError(msg, ErrorCode.CHANNEL_DISCONNECTED) from exc
        except BadRequest as exc:
            if "chat not found" in exc.message.lower():
                raise DeliveryError(f"Chat {target} not found", ErrorCode.CHANNEL_NOT_FOUND) from exc
            msg = f"Telegram rejected the message: {exc.message}"
            raise DeliveryError(msg, ErrorCode.INVALID_SETTINGS) from exc
        except TelegramError as exc:
            logger.warning("TelegramChannel.send failed for target=%s: %s", target, exc)
            raise DeliveryError(f"Telegram API error: {exc.message}", ErrorCode.TELEGRAM_API_ERROR) from exc

        message_id = getattr(sent, "message_id", None)
        return str(message_id) if message_id is not None else None
