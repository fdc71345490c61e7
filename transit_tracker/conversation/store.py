"""In-memory conversation state per chat."""

import threading
from typing import Dict

from transit_tracker.conversation.states import ConversationState, Idle


class ConversationStore:
    """Chat ID -> current state. Chats without an entry are Idle."""

    def __init__(self):
        self._states: Dict[int, ConversationState] = {}
        self._lock = threading.Lock()

    def get(self, chat_id: int) -> ConversationState:
        with self._lock:
            return self._states.get(chat_id, Idle())

    def set(self, chat_id: int, state: ConversationState) -> None:
        with self._lock:
            if isinstance(state, Idle):
                self._states.pop(chat_id, None)
            else:
                self._states[chat_id] = state

    def reset(self, chat_id: int) -> None:
        with self._lock:
            self._states.pop(chat_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)
