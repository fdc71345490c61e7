"""Pydantic models for transit tracking."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class TrackingOutcome(str, Enum):
    """How a tracking session ended."""
    DEPARTED = "departed"    # Logical now passed the effective departure time
    NOT_FOUND = "not_found"  # Line/direction no longer reported by the feed
    CANCELLED = "cancelled"  # Cancelled by the user through the task registry


class Location(BaseModel):
    """Geographic coordinate pair."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., description="Latitude in decimal degrees")
    longitude: float = Field(..., description="Longitude in decimal degrees")


class Station(BaseModel):
    """Transit station (stop)."""

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "id": "900100003",
                "name": "S+U Alexanderplatz",
                "location": {"latitude": 52.521508, "longitude": 13.411267},
                "distance": 240,
            }
        },
    )

    id: str = Field(..., description="Provider station ID")
    name: str = Field(..., description="Station name")
    location: Location = Field(..., description="Station coordinates")
    distance: int = Field(
        default=-1,
        description="Distance in metres from the query point (-1 = not computed)"
    )


class Departure(BaseModel):
    """A single upcoming departure from a station, as seen in one poll."""

    model_config = ConfigDict(frozen=True)

    station_id: str = Field(..., description="Station the departure leaves from")
    line_name: str = Field(..., description="Line name, e.g. 'Bus 100' or 'S7'")
    planned_time: datetime = Field(..., description="Planned departure time (timezone-aware)")
    delay_seconds: Optional[int] = Field(None, description="Reported delay in seconds")
    direction: str = Field(..., description="Direction label shown on the vehicle")
    destination: Optional[Station] = Field(None, description="Final destination")
    current_position: Optional[Location] = Field(None, description="Live vehicle position")

    @property
    def effective_time(self) -> datetime:
        """Planned time plus the reported delay."""
        if self.delay_seconds:
            return self.planned_time + timedelta(seconds=self.delay_seconds)
        return self.planned_time

    @property
    def key(self) -> str:
        """Composite line key used for selection buttons."""
        return line_key(self.line_name, self.direction)


def line_key(line_name: str, direction: str) -> str:
    """Build the "{name} ({direction})" key for a line."""
    return f"{line_name} ({direction})"


class UserProfile(BaseModel):
    """Last used address of a user."""

    # Older profile files store the Telegram ID as a number
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str = Field(..., description="Telegram user ID")
    city: str = Field(..., description="City the user entered")
    address: str = Field(..., description="Resolved street address")
    lat: float = Field(..., description="Latitude of the address")
    lon: float = Field(..., description="Longitude of the address")


class TrackingSession(BaseModel):
    """State of one user's tracked departure.

    Owned by exactly one TrackingScheduler, which mutates the interval and
    the logical clock as it ticks.
    """

    user_id: str = Field(..., description="Telegram user ID")
    chat_id: int = Field(..., description="Chat to send notifications to")
    station_id: str = Field(..., description="Tracked station ID")
    station_name: str = Field(..., description="Tracked station name")
    line_name: str = Field(..., description="Selected line name")
    direction: str = Field(..., description="Selected direction")
    poll_interval_minutes: int = Field(..., ge=1, description="Current polling interval")
    started_at: datetime = Field(..., description="Time the session was created")
    last_known_tick_time: Optional[datetime] = Field(
        None,
        description="Logical now of the most recent tick"
    )
    prompt_message_id: Optional[int] = Field(
        None,
        description="Interval prompt to retract on the first tick"
    )

    @property
    def line(self) -> str:
        return line_key(self.line_name, self.direction)
