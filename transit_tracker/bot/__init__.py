"""Telegram bot layer: handlers, response formatting and the application entry point."""
