"""
Transit Tracker - Telegram bot that follows a chosen departure in real time.

The user picks an address, a nearby station, a line and an update interval;
the bot then keeps one progress message up to date until the transit leaves.
"""

__version__ = "1.0.0"
