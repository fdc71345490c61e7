"""
Task Registry mapping each user to their running tracking task.

A user has at most one live task. The map is the only state shared between
the conversation handlers and the tracking tasks, so every access goes
through the lock; each critical section is a single dict operation.
"""

import asyncio
import threading
from typing import Dict, List, Optional

from transit_tracker.utils.logger import get_logger

logger = get_logger()


class TaskRegistry:
    """Concurrency-safe map of user ID -> tracking task."""

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}
        self._lock = threading.Lock()

    def register(self, user_id: str, task: asyncio.Task) -> None:
        """
        Register the tracking task of a user.

        A task already registered for the user is cancelled and replaced.
        The entry removes itself when the task finishes.

        Args:
            user_id: Telegram user ID
            task: Running tracking task
        """
        with self._lock:
            stale = self._tasks.get(user_id)
            self._tasks[user_id] = task

        if stale is not None and stale is not task and not stale.done():
            stale.cancel()
            logger.bind(user_id=user_id).warning("Replaced running tracking task")

        task.add_done_callback(lambda finished: self.remove(user_id, finished))
        logger.bind(user_id=user_id).info("Registered tracking task")

    def cancel(self, user_id: str) -> bool:
        """
        Cancel and remove the task of a user.

        Cancelling a missing or finished task is a no-op.

        Returns:
            bool: True if a live task was cancelled
        """
        with self._lock:
            task = self._tasks.pop(user_id, None)

        if task is None or task.done():
            return False

        task.cancel()
        logger.bind(user_id=user_id).info("Cancelled tracking task")
        return True

    def remove(self, user_id: str, task: Optional[asyncio.Task] = None) -> None:
        """
        Remove the entry of a user without cancelling it.

        Args:
            user_id: Telegram user ID
            task: If given, remove only when this task is the registered one
        """
        with self._lock:
            current = self._tasks.get(user_id)
            if current is None or (task is not None and current is not task):
                return
            del self._tasks[user_id]
        logger.bind(user_id=user_id).debug("Removed tracking task entry")

    def get(self, user_id: str) -> Optional[asyncio.Task]:
        with self._lock:
            return self._tasks.get(user_id)

    def is_active(self, user_id: str) -> bool:
        task = self.get(user_id)
        return task is not None and not task.done()

    def cancel_all(self) -> List[asyncio.Task]:
        """Cancel every registered task (used on shutdown). Returns the cancelled tasks."""
        with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()

        cancelled = [t for t in tasks if not t.done()]
        for task in cancelled:
            task.cancel()
        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} tracking task(s)")
        return cancelled

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)
