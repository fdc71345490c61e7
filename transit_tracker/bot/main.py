"""Main entry point for the Telegram bot application."""

import asyncio

from telegram import BotCommand, Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from transit_tracker.bot.handlers import BotHandlers
from transit_tracker.conversation.machine import ConversationMachine
from transit_tracker.gateways.geocoding_client import GeocodingClient
from transit_tracker.gateways.transit_client import TransitClient
from transit_tracker.storage.profile_store import JsonProfileStore
from transit_tracker.tracker.notifier import get_notifier
from transit_tracker.tracker.task_registry import TaskRegistry
from transit_tracker.utils.config import get_settings
from transit_tracker.utils.logger import get_logger, setup_logger

# Initialize logger
setup_logger()
logger = get_logger()

BOT_COMMANDS = [
    BotCommand("start", "Start tracking your transit"),
    BotCommand("cancel", "Cancel the tracking"),
    BotCommand("help", "Display the help menu"),
]


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE):
    """Handle errors in the bot."""
    logger.error(f"Update {update} caused error {context.error}")


def build_application(registry: TaskRegistry) -> Application:
    """
    Wire clients, state machine and handlers into a PTB Application.

    Args:
        registry: Task registry shared by every chat

    Returns:
        Application: Ready to run
    """
    settings = get_settings()

    async def post_init(application: Application) -> None:
        await application.bot.set_my_commands(BOT_COMMANDS)
        logger.info("Bot commands registered")

    async def post_shutdown(application: Application) -> None:
        cancelled = registry.cancel_all()
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)
        logger.info("All tracking tasks stopped")

    application = (
        Application.builder()
        .token(settings.telegram_bot_token)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )

    notifier = get_notifier(application.bot, dry_run=settings.dry_run)
    machine = ConversationMachine(
        geocoder=GeocodingClient(),
        transit_client=TransitClient(),
        profile_store=JsonProfileStore(),
        registry=registry,
        notifier=notifier,
    )
    handlers = BotHandlers(machine=machine, notifier=notifier)
    machine.on_tracking_finished = handlers.on_tracking_finished

    # Add command handlers
    application.add_handler(CommandHandler(["start", "cancel", "help"], handlers.handle_command))

    # Text and locations (exclude edited messages to avoid duplicates)
    application.add_handler(
        MessageHandler(
            (filters.TEXT | filters.LOCATION)
            & ~filters.COMMAND
            & ~filters.UpdateType.EDITED_MESSAGE,
            handlers.handle_message,
        )
    )

    # Unknown commands reach the state machine as well
    application.add_handler(MessageHandler(filters.COMMAND, handlers.handle_command))

    application.add_handler(CallbackQueryHandler(handlers.handle_callback))

    # Add error handler
    application.add_error_handler(error_handler)

    return application


def main():
    """Start the bot."""
    settings = get_settings()

    logger.info("Starting transit tracker bot...")
    logger.info(f"Bot token configured: {'Yes' if settings.telegram_bot_token else 'No'}")
    logger.info(f"Transit API: {settings.transit_api_base_url}")
    logger.info(f"Geocoder: {settings.geocoder_base_url}")
    logger.info(f"Interval choices: {settings.interval_choices}")

    if not settings.telegram_bot_token or settings.telegram_bot_token == "your_telegram_bot_token_here":
        logger.error("TELEGRAM_BOT_TOKEN not configured! Please set it in .env file")
        return

    application = build_application(TaskRegistry())

    # Start bot
    logger.info("Bot is starting polling...")
    application.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.info("Bot stopped by user")
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
