"""
Tracking Module - polls departures of a selected line and reports progress.

This module provides the tracking scheduler, the per-user task registry and
the notifiers used to talk to the chat.
"""
