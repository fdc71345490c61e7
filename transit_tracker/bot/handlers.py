"""Telegram update handlers: translate updates into events, render effects."""

from typing import List, Optional

from telegram import Update
from telegram.ext import ContextTypes

from transit_tracker.bot.response_formatter import get_response_formatter
from transit_tracker.conversation.events import (
    ClearOptions,
    CommandReceived,
    DeleteMessage,
    EditMessage,
    Effect,
    Event,
    LocationReceived,
    SelectionReceived,
    SendMessage,
    TextReceived,
)
from transit_tracker.conversation.machine import ConversationMachine
from transit_tracker.conversation.states import Tracking
from transit_tracker.conversation.store import ConversationStore
from transit_tracker.tracker.models import TrackingOutcome, TrackingSession
from transit_tracker.tracker.notifier import BaseNotifier
from transit_tracker.utils.logger import get_logger

logger = get_logger()


class BotHandlers:
    """Centralized message, command and button handling."""

    def __init__(
        self,
        machine: ConversationMachine,
        notifier: BaseNotifier,
        store: Optional[ConversationStore] = None,
    ):
        """
        Initialize bot handlers.

        Args:
            machine: Conversation state machine
            notifier: Output channel effects are rendered through
            store: Per-chat state store (a fresh one if None)
        """
        self.machine = machine
        self.notifier = notifier
        self.store = store or ConversationStore()
        self.formatter = get_response_formatter()
        logger.info("BotHandlers initialized")

    async def handle_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /start, /cancel, /help and any unknown command."""
        message = update.effective_message
        if not message or not message.text:
            return

        command = message.text.split()[0].lstrip("/").split("@")[0].lower()
        logger.info(f"/{command} command from user {update.effective_user.id}")

        await self.dispatch(
            CommandReceived(
                user_id=str(update.effective_user.id),
                chat_id=update.effective_chat.id,
                received_at=message.date,
                command=command,
            )
        )

    async def handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle plain text and shared locations."""
        message = update.effective_message
        if not message:
            return

        user_id = str(update.effective_user.id)
        chat_id = update.effective_chat.id

        if message.location is not None:
            event: Event = LocationReceived(
                user_id=user_id,
                chat_id=chat_id,
                received_at=message.date,
                latitude=message.location.latitude,
                longitude=message.location.longitude,
            )
        elif message.text:
            event = TextReceived(
                user_id=user_id,
                chat_id=chat_id,
                received_at=message.date,
                text=message.text,
            )
        else:
            logger.debug("Ignoring update without text or location")
            return

        await self.dispatch(event)

    async def handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle inline keyboard button presses."""
        query = update.callback_query
        if query is None:
            return

        await query.answer()

        # The press time, not the date of the message carrying the buttons
        message = query.message
        await self.dispatch(
            SelectionReceived(
                user_id=str(query.from_user.id),
                chat_id=message.chat.id if message else query.from_user.id,
                data=query.data or "",
                message_id=message.message_id if message else None,
            )
        )

    async def dispatch(self, event: Event) -> None:
        """Advance the chat's conversation and render the resulting effects."""
        with logger.contextualize(user_id=event.user_id):
            state = self.store.get(event.chat_id)
            try:
                transition = await self.machine.advance(state, event)
            except Exception as e:
                logger.exception(f"Error handling {event.kind} in chat {event.chat_id}: {e}")
                await self.notifier.send_message(event.chat_id, self.formatter.unhandled())
                return

            self.store.set(event.chat_id, transition.state)
            await self.apply_effects(event.chat_id, transition.effects)

    async def apply_effects(self, chat_id: int, effects: List[Effect]) -> None:
        for effect in effects:
            if isinstance(effect, SendMessage):
                await self.notifier.send_message(
                    chat_id, effect.text, options=effect.options or None, columns=effect.columns
                )
            elif isinstance(effect, EditMessage):
                await self.notifier.edit_message(chat_id, effect.message_id, effect.text)
            elif isinstance(effect, ClearOptions):
                await self.notifier.clear_options(chat_id, effect.message_id)
            elif isinstance(effect, DeleteMessage):
                await self.notifier.delete_message(chat_id, effect.message_id)

    async def on_tracking_finished(self, session: TrackingSession, outcome: TrackingOutcome) -> None:
        """Return the chat to Idle once its tracking task ends on its own."""
        if isinstance(self.store.get(session.chat_id), Tracking):
            self.store.reset(session.chat_id)
            logger.debug(f"Chat {session.chat_id} back to idle after {outcome.value}")
