"""Conversation state machine.

This module contains:
- States: one tagged value per chat
- Events and effects: what comes in from Telegram and what goes back out
- Machine: the explicit transition table
- Store: in-memory map of chat ID to state
"""
