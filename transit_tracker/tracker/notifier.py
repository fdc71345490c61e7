"""
Chat notifier used by the conversation flow and the tracking scheduler.

Supports two modes:
1. PRODUCTION - actual sending through the Telegram Bot API
2. DRY_RUN (development) - logging only, no actual sending
"""

from abc import ABC, abstractmethod
from itertools import count
from typing import Any, Dict, List, Optional, Sequence

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.constants import ParseMode
from telegram.error import BadRequest, NetworkError, TelegramError, TimedOut

from transit_tracker.utils.logger import get_logger

logger = get_logger()

# Telegram rejects callback data longer than 64 bytes
MAX_CALLBACK_DATA_BYTES = 64


def callback_data_for(label: str) -> str:
    """Return the button label trimmed to the callback data byte limit."""
    encoded = label.encode("utf-8")
    if len(encoded) <= MAX_CALLBACK_DATA_BYTES:
        return label
    return encoded[:MAX_CALLBACK_DATA_BYTES].decode("utf-8", errors="ignore")


def make_inline_keyboard(options: Sequence[str], columns: int = 2) -> InlineKeyboardMarkup:
    """Lay out options as callback buttons, `columns` per row."""
    columns = max(1, columns)
    rows = []
    for start in range(0, len(options), columns):
        rows.append([
            InlineKeyboardButton(label, callback_data=callback_data_for(label))
            for label in options[start:start + columns]
        ])
    return InlineKeyboardMarkup(rows)


class BaseNotifier(ABC):
    """Abstract base class for notifiers."""

    @abstractmethod
    async def send_message(
        self,
        chat_id: int,
        text: str,
        options: Optional[Sequence[str]] = None,
        columns: int = 2,
    ) -> Optional[int]:
        """
        Send an HTML text message, optionally with option buttons.

        Returns:
            Optional[int]: Message ID, or None if sending failed
        """
        pass

    @abstractmethod
    async def send_location(self, chat_id: int, latitude: float, longitude: float) -> Optional[int]:
        """Send a location marker. Returns the message ID or None."""
        pass

    @abstractmethod
    async def edit_message(self, chat_id: int, message_id: int, text: str) -> bool:
        """Replace a message's text and drop its buttons."""
        pass

    @abstractmethod
    async def clear_options(self, chat_id: int, message_id: int) -> bool:
        """Remove the buttons from a message."""
        pass

    @abstractmethod
    async def delete_message(self, chat_id: int, message_id: int) -> bool:
        """Delete a message. Failures are not errors."""
        pass


class LogNotifier(BaseNotifier):
    """
    Notifier for development mode - logging only.

    Every outbound operation is logged and kept in `sent`, and fake message
    IDs are handed out so callers can retract what they "sent".
    """

    def __init__(self):
        """Initialize LogNotifier."""
        self._ids = count(1)
        self.sent: List[Dict[str, Any]] = []
        logger.info("🔧 LogNotifier initialized (DRY-RUN mode)")

    def _record(self, **entry: Any) -> None:
        self.sent.append(entry)
        logger.info(f"📢 [DRY-RUN] {entry}")

    async def send_message(self, chat_id, text, options=None, columns=2):
        message_id = next(self._ids)
        self._record(
            op="send_message",
            chat_id=chat_id,
            message_id=message_id,
            text=text,
            options=list(options or []),
        )
        return message_id

    async def send_location(self, chat_id, latitude, longitude):
        message_id = next(self._ids)
        self._record(
            op="send_location",
            chat_id=chat_id,
            message_id=message_id,
            latitude=latitude,
            longitude=longitude,
        )
        return message_id

    async def edit_message(self, chat_id, message_id, text):
        self._record(op="edit_message", chat_id=chat_id, message_id=message_id, text=text)
        return True

    async def clear_options(self, chat_id, message_id):
        self._record(op="clear_options", chat_id=chat_id, message_id=message_id)
        return True

    async def delete_message(self, chat_id, message_id):
        self._record(op="delete_message", chat_id=chat_id, message_id=message_id)
        return True


class TelegramNotifier(BaseNotifier):
    """
    Notifier for production - actual sending to Telegram.

    Wraps the python-telegram-bot Bot of the running application.
    """

    def __init__(self, bot: Bot):
        """
        Initialize TelegramNotifier.

        Args:
            bot: Bot instance of the running Application
        """
        self.bot = bot
        logger.info("✅ TelegramNotifier initialized (PRODUCTION mode)")

    async def send_message(self, chat_id, text, options=None, columns=2):
        reply_markup = make_inline_keyboard(options, columns) if options else None
        try:
            message = await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode=ParseMode.HTML,
                reply_markup=reply_markup,
            )
            return message.message_id
        except TelegramError as e:
            logger.error(f"❌ Failed to send message to chat {chat_id}: {e}")
            return None

    async def send_location(self, chat_id, latitude, longitude):
        try:
            message = await self.bot.send_location(
                chat_id=chat_id,
                latitude=latitude,
                longitude=longitude,
            )
            return message.message_id
        except TelegramError as e:
            logger.error(f"❌ Failed to send location to chat {chat_id}: {e}")
            return None

    async def edit_message(self, chat_id, message_id, text):
        try:
            await self.bot.edit_message_text(
                chat_id=chat_id,
                message_id=message_id,
                text=text,
                parse_mode=ParseMode.HTML,
                reply_markup=None,
            )
            return True
        except BadRequest as e:
            if "not modified" in str(e).lower():
                return True
            logger.warning(f"Edit of message {message_id} in chat {chat_id} failed: {e}")
            return False
        except (TimedOut, NetworkError) as e:
            logger.warning(f"Edit of message {message_id} in chat {chat_id} failed: {e}")
            return False

    async def clear_options(self, chat_id, message_id):
        try:
            await self.bot.edit_message_reply_markup(
                chat_id=chat_id,
                message_id=message_id,
                reply_markup=None,
            )
            return True
        except (BadRequest, TimedOut, NetworkError) as e:
            logger.debug(f"Could not clear buttons of message {message_id}: {e}")
            return False

    async def delete_message(self, chat_id, message_id):
        try:
            await self.bot.delete_message(chat_id=chat_id, message_id=message_id)
            return True
        except (BadRequest, TimedOut, NetworkError) as e:
            logger.debug(f"Could not delete message {message_id} in chat {chat_id}: {e}")
            return False


def get_notifier(bot: Optional[Bot] = None, dry_run: bool = False) -> BaseNotifier:
    """
    Factory for creating notifiers.

    Args:
        bot: Telegram bot (required unless dry_run)
        dry_run: If True - LogNotifier (logs only), else TelegramNotifier

    Returns:
        BaseNotifier: Notifier instance
    """
    if dry_run:
        logger.info("🔧 Creating LogNotifier (DRY-RUN mode for development)")
        return LogNotifier()

    if bot is None:
        raise ValueError("A Telegram bot is required outside DRY-RUN mode")

    logger.info("✅ Creating TelegramNotifier (PRODUCTION mode)")
    return TelegramNotifier(bot)
