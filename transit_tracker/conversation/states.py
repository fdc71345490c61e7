"""Conversation states: one value per chat, replaced on every transition."""

from typing import List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from transit_tracker.tracker.models import Station, line_key


class _State(BaseModel):
    model_config = ConfigDict(frozen=True)


class Idle(_State):
    kind: Literal["idle"] = "idle"


class AwaitingCity(_State):
    kind: Literal["awaiting_city"] = "awaiting_city"


class AwaitingAddress(_State):
    kind: Literal["awaiting_address"] = "awaiting_address"
    city: str


class AwaitingStation(_State):
    kind: Literal["awaiting_station"] = "awaiting_station"
    city: str
    address: str
    stations: List[Station] = Field(default_factory=list)


class LineChoice(BaseModel):
    """A (line, direction) pair offered at a station."""

    model_config = ConfigDict(frozen=True)

    line_name: str
    direction: str

    @property
    def key(self) -> str:
        return line_key(self.line_name, self.direction)


class AwaitingLine(_State):
    kind: Literal["awaiting_line"] = "awaiting_line"
    city: str
    address: str
    stations: List[Station] = Field(default_factory=list)
    station: str
    station_id: str
    lines: List[LineChoice] = Field(default_factory=list)


class AwaitingInterval(_State):
    kind: Literal["awaiting_interval"] = "awaiting_interval"
    city: str
    address: str
    stations: List[Station] = Field(default_factory=list)
    station: str
    station_id: str
    line: str
    line_name: str
    direction: str


class Tracking(_State):
    kind: Literal["tracking"] = "tracking"
    station: str = ""
    line: str = ""


ConversationState = Union[
    Idle,
    AwaitingCity,
    AwaitingAddress,
    AwaitingStation,
    AwaitingLine,
    AwaitingInterval,
    Tracking,
]
