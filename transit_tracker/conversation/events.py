"""Inbound events and outbound effects of the conversation state machine."""

from datetime import datetime, timezone
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    chat_id: int
    received_at: datetime = Field(default_factory=_utcnow)


class TextReceived(_Event):
    kind: Literal["text"] = "text"
    text: str


class LocationReceived(_Event):
    kind: Literal["location"] = "location"
    latitude: float
    longitude: float


class SelectionReceived(_Event):
    """A button press; `message_id` is the message carrying the buttons."""
    kind: Literal["selection"] = "selection"
    data: str
    message_id: Optional[int] = None


class CommandReceived(_Event):
    kind: Literal["command"] = "command"
    command: str  # without the leading slash, lowercased


Event = Union[TextReceived, LocationReceived, SelectionReceived, CommandReceived]


class _Effect(BaseModel):
    model_config = ConfigDict(frozen=True)


class SendMessage(_Effect):
    kind: Literal["send_message"] = "send_message"
    text: str
    options: List[str] = Field(default_factory=list)
    columns: int = 2


class EditMessage(_Effect):
    kind: Literal["edit_message"] = "edit_message"
    message_id: int
    text: str


class ClearOptions(_Effect):
    kind: Literal["clear_options"] = "clear_options"
    message_id: int


class DeleteMessage(_Effect):
    kind: Literal["delete_message"] = "delete_message"
    message_id: int


Effect = Union[SendMessage, EditMessage, ClearOptions, DeleteMessage]
