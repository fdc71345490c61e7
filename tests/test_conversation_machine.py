"""
Tests for the conversation state machine.

Every collaborator is an in-memory fake; tracking tasks use a sleep that
never returns so they stay alive until cancelled.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from transit_tracker.bot.response_formatter import (
    CANCEL_OPTION,
    CHANGE_ADDRESS_OPTION,
    ResponseFormatter,
)
from transit_tracker.conversation.events import (
    ClearOptions,
    CommandReceived,
    DeleteMessage,
    EditMessage,
    LocationReceived,
    SelectionReceived,
    SendMessage,
    TextReceived,
)
from transit_tracker.conversation.machine import ConversationMachine
from transit_tracker.conversation.states import (
    AwaitingAddress,
    AwaitingCity,
    AwaitingInterval,
    AwaitingLine,
    AwaitingStation,
    Idle,
    LineChoice,
    Tracking,
)
from transit_tracker.gateways.geocoding_client import GeocodingError
from transit_tracker.gateways.transit_client import TransitAPIError
from transit_tracker.storage.profile_store import ProfileStore, ProfileStoreError
from transit_tracker.tracker.models import Departure, Location, Station, UserProfile
from transit_tracker.tracker.notifier import LogNotifier
from transit_tracker.tracker.task_registry import TaskRegistry

USER_ID = "42"
CHAT_ID = 4242

ALEXANDERPLATZ = Station(
    id="900100003",
    name="S+U Alexanderplatz",
    location=Location(latitude=52.521508, longitude=13.411267),
    distance=240,
)
DIRCKSENSTR = Station(
    id="900100024",
    name="S+U Alexanderplatz/Dircksenstr.",
    location=Location(latitude=52.52207, longitude=13.410904),
    distance=315,
)


class FakeGeocoder:
    def __init__(self, coordinates=(52.5219, 13.4132), address="Alexanderplatz 1", error=None):
        self.coordinates = coordinates
        self.address = address
        self.error = error
        self.calls: List = []

    async def resolve(self, address, city):
        self.calls.append(("resolve", address, city))
        if self.error:
            raise self.error
        return self.coordinates

    async def reverse_resolve(self, lat, lon):
        self.calls.append(("reverse", lat, lon))
        if self.error:
            raise self.error
        return self.address


class FakeTransitClient:
    def __init__(self, stations=None, departures=None, error=None):
        self.stations = [ALEXANDERPLATZ, DIRCKSENSTR] if stations is None else stations
        self.departures_by_station: Dict[str, List[Departure]] = departures or {}
        self.error = error

    async def nearby_stations(self, lat, lon):
        if self.error:
            raise self.error
        return self.stations

    async def departures(self, station_id):
        if self.error:
            raise self.error
        return self.departures_by_station.get(station_id, [])


class InMemoryProfileStore(ProfileStore):
    def __init__(self, profiles=None, fail_on_put=False):
        self.profiles: Dict[str, UserProfile] = dict(profiles or {})
        self.fail_on_put = fail_on_put

    def get(self, user_id: str) -> Optional[UserProfile]:
        return self.profiles.get(user_id)

    def put(self, profile: UserProfile) -> None:
        if self.fail_on_put:
            raise ProfileStoreError("disk full")
        self.profiles[profile.id] = profile


async def never_wake(seconds):
    await asyncio.Event().wait()


def create_test_departure(line_name="S7", direction="Potsdam Hbf", minutes_ahead=30) -> Departure:
    """Create a departure in the near future."""
    return Departure(
        station_id=ALEXANDERPLATZ.id,
        line_name=line_name,
        planned_time=datetime.now(timezone.utc) + timedelta(minutes=minutes_ahead),
        delay_seconds=60,
        direction=direction,
    )


def text(value: str) -> TextReceived:
    return TextReceived(user_id=USER_ID, chat_id=CHAT_ID, text=value)


def command(name: str) -> CommandReceived:
    return CommandReceived(user_id=USER_ID, chat_id=CHAT_ID, command=name)


def selection(data: str, message_id: Optional[int] = 10) -> SelectionReceived:
    return SelectionReceived(user_id=USER_ID, chat_id=CHAT_ID, data=data, message_id=message_id)


def sent_texts(effects) -> List[str]:
    return [e.text for e in effects if isinstance(e, SendMessage)]


def station_state() -> AwaitingStation:
    return AwaitingStation(city="Berlin", address="Alexanderplatz 1", stations=[ALEXANDERPLATZ, DIRCKSENSTR])


def line_state() -> AwaitingLine:
    return AwaitingLine(
        city="Berlin",
        address="Alexanderplatz 1",
        stations=[ALEXANDERPLATZ, DIRCKSENSTR],
        station=ALEXANDERPLATZ.name,
        station_id=ALEXANDERPLATZ.id,
        lines=[
            LineChoice(line_name="S7", direction="Potsdam Hbf"),
            LineChoice(line_name="U2", direction="Pankow"),
        ],
    )


def interval_state() -> AwaitingInterval:
    return AwaitingInterval(
        city="Berlin",
        address="Alexanderplatz 1",
        stations=[ALEXANDERPLATZ],
        station=ALEXANDERPLATZ.name,
        station_id=ALEXANDERPLATZ.id,
        line="S7 (Potsdam Hbf)",
        line_name="S7",
        direction="Potsdam Hbf",
    )


class TestConversationMachine:
    """Test cases for ConversationMachine."""

    def setup_method(self):
        """Set up test fixtures."""
        self.formatter = ResponseFormatter()
        self.geocoder = FakeGeocoder()
        self.transit = FakeTransitClient(
            departures={
                ALEXANDERPLATZ.id: [
                    create_test_departure("S7", "Potsdam Hbf"),
                    create_test_departure("U2", "Pankow", minutes_ahead=12),
                    create_test_departure("S7", "Potsdam Hbf", minutes_ahead=40),
                ]
            }
        )
        self.profiles = InMemoryProfileStore()
        self.registry = TaskRegistry()
        self.notifier = LogNotifier()
        self.machine = self.make_machine()

    def make_machine(self) -> ConversationMachine:
        return ConversationMachine(
            geocoder=self.geocoder,
            transit_client=self.transit,
            profile_store=self.profiles,
            registry=self.registry,
            notifier=self.notifier,
            formatter=self.formatter,
            interval_choices=[1, 2, 3],
            keyboard_columns=2,
            sleep=never_wake,
        )

    async def cleanup_tasks(self):
        await asyncio.gather(*self.registry.cancel_all(), return_exceptions=True)

    @pytest.mark.asyncio
    async def test_new_user_reaches_station_list(self):
        """/start, "Berlin", "Alexanderplatz 1" ends with a station list."""
        state, effects = await self.machine.advance(Idle(), command("start"))
        assert isinstance(state, AwaitingCity)
        assert sent_texts(effects) == [self.formatter.city_prompt()]

        state, effects = await self.machine.advance(state, text("Berlin"))
        assert state == AwaitingAddress(city="Berlin")
        assert "Berlin" in sent_texts(effects)[0]

        state, effects = await self.machine.advance(state, text("Alexanderplatz 1"))
        assert isinstance(state, AwaitingStation)
        assert state.city == "Berlin"
        assert state.address == "Alexanderplatz 1"
        assert self.geocoder.calls == [("resolve", "Alexanderplatz 1", "Berlin")]

        [message] = effects
        assert message.options, "Station list should offer buttons"
        assert message.options[-1] == CHANGE_ADDRESS_OPTION
        assert message.options[:-1] == [ALEXANDERPLATZ.name, DIRCKSENSTR.name]

        stored = self.profiles.get(USER_ID)
        assert stored is not None
        assert (stored.lat, stored.lon) == (52.5219, 13.4132)

    @pytest.mark.asyncio
    async def test_returning_user_skips_address(self):
        self.profiles.put(UserProfile(id=USER_ID, city="Berlin", address="Alexanderplatz 1", lat=52.5, lon=13.4))

        state, effects = await self.machine.advance(Idle(), command("start"))

        assert isinstance(state, AwaitingStation)
        assert "last used address" in sent_texts(effects)[0]
        assert self.geocoder.calls == []

    @pytest.mark.asyncio
    async def test_location_is_reverse_geocoded(self):
        event = LocationReceived(user_id=USER_ID, chat_id=CHAT_ID, latitude=52.52, longitude=13.41)

        state, effects = await self.machine.advance(AwaitingAddress(city="Berlin"), event)

        assert isinstance(state, AwaitingStation)
        assert state.address == "Alexanderplatz 1"
        assert self.geocoder.calls == [("reverse", 52.52, 13.41)]
        assert self.profiles.get(USER_ID).lat == 52.52

    @pytest.mark.asyncio
    async def test_location_instead_of_city(self):
        event = LocationReceived(user_id=USER_ID, chat_id=CHAT_ID, latitude=52.52, longitude=13.41)

        state, effects = await self.machine.advance(AwaitingCity(), event)

        assert isinstance(state, AwaitingCity)
        assert sent_texts(effects) == [self.formatter.missing_city()]

    @pytest.mark.asyncio
    async def test_geocoding_error_keeps_state(self):
        self.geocoder.error = GeocodingError("no match")
        state = AwaitingAddress(city="Berlin")

        new_state, effects = await self.machine.advance(state, text("Nowhere 99"))

        assert new_state == state
        assert sent_texts(effects) == [self.formatter.geocoding_error()]
        assert self.profiles.get(USER_ID) is None

    @pytest.mark.asyncio
    async def test_upstream_error_keeps_state(self):
        self.transit.error = TransitAPIError("HTTP 503")
        state = AwaitingAddress(city="Berlin")

        new_state, effects = await self.machine.advance(state, text("Alexanderplatz 1"))

        assert new_state == state
        assert sent_texts(effects) == [self.formatter.upstream_error()]

    @pytest.mark.asyncio
    async def test_no_nearby_stations(self):
        self.transit.stations = []

        state, effects = await self.machine.advance(AwaitingAddress(city="Berlin"), text("Feldweg 3"))

        assert isinstance(state, Idle)
        assert sent_texts(effects) == [self.formatter.no_stations("Feldweg 3", "Berlin")]
        assert "/start" in sent_texts(effects)[0]

    @pytest.mark.asyncio
    async def test_returning_user_without_nearby_stations(self):
        self.profiles.put(UserProfile(id=USER_ID, city="Berlin", address="Feldweg 3", lat=52.5, lon=13.4))
        self.transit.stations = []

        state, _ = await self.machine.advance(Idle(), command("start"))

        assert isinstance(state, Idle)

    @pytest.mark.asyncio
    async def test_profile_store_failure_does_not_block(self):
        self.profiles.fail_on_put = True

        state, _ = await self.machine.advance(AwaitingAddress(city="Berlin"), text("Alexanderplatz 1"))

        assert isinstance(state, AwaitingStation)

    @pytest.mark.asyncio
    async def test_change_address(self):
        state, effects = await self.machine.advance(station_state(), selection(CHANGE_ADDRESS_OPTION, 10))

        assert state == AwaitingAddress(city="Berlin")
        assert effects == [EditMessage(message_id=10, text=self.formatter.change_address_prompt())]

    @pytest.mark.asyncio
    async def test_station_selection_lists_lines(self):
        state, effects = await self.machine.advance(station_state(), selection(ALEXANDERPLATZ.name, 10))

        assert isinstance(state, AwaitingLine)
        assert state.station_id == ALEXANDERPLATZ.id
        assert [line.key for line in state.lines] == ["S7 (Potsdam Hbf)", "U2 (Pankow)"]

        assert effects[0] == ClearOptions(message_id=10)
        board, prompt = effects[1], effects[2]
        assert "S+U Alexanderplatz" in board.text
        assert "(+1)" in board.text
        assert prompt.text == self.formatter.select_line()
        assert prompt.options == ["S7 (Potsdam Hbf)", "U2 (Pankow)"]

    @pytest.mark.asyncio
    async def test_station_selection_by_truncated_data(self):
        self.transit.departures_by_station[DIRCKSENSTR.id] = [create_test_departure("M4", "Falkenberg")]

        state, _ = await self.machine.advance(station_state(), selection("S+U Alexanderplatz/Dirck"))

        assert isinstance(state, AwaitingLine)
        assert state.station_id == DIRCKSENSTR.id

    @pytest.mark.asyncio
    async def test_station_without_departures(self):
        state, effects = await self.machine.advance(station_state(), selection(DIRCKSENSTR.name))

        assert isinstance(state, Idle)
        assert sent_texts(effects) == [self.formatter.no_departures()]

    @pytest.mark.asyncio
    async def test_stale_station_restarts(self):
        state, effects = await self.machine.advance(station_state(), selection("Zoologischer Garten", 10))

        assert isinstance(state, Idle)
        assert effects[0] == ClearOptions(message_id=10)
        assert sent_texts(effects) == [self.formatter.restart_required()]

    @pytest.mark.asyncio
    async def test_ambiguous_station_restarts(self):
        state, _ = await self.machine.advance(station_state(), selection("S+U Alex"))
        assert isinstance(state, Idle)

    @pytest.mark.asyncio
    async def test_line_selection_prompts_interval(self):
        state, effects = await self.machine.advance(line_state(), selection("U2 (Pankow)", 11))

        assert isinstance(state, AwaitingInterval)
        assert state.line == "U2 (Pankow)"
        assert state.line_name == "U2"
        assert state.direction == "Pankow"

        assert effects[0] == DeleteMessage(message_id=11)
        assert effects[1].options == ["1", "2", "3"]
        assert effects[1].columns == 3

    @pytest.mark.asyncio
    async def test_stale_line_restarts(self):
        state, effects = await self.machine.advance(line_state(), selection("S5 (Strausberg)"))

        assert isinstance(state, Idle)
        assert self.formatter.restart_required() in sent_texts(effects)

    @pytest.mark.asyncio
    async def test_invalid_interval_reprompts(self):
        state = interval_state()

        for data in ["7", "0", "abc", "-1", "²"]:
            new_state, effects = await self.machine.advance(state, selection(data))
            assert new_state == state, f"State should not change for {data!r}"
            assert sent_texts(effects) == [self.formatter.invalid_interval()]

        assert len(self.registry) == 0

    @pytest.mark.asyncio
    async def test_interval_selection_starts_tracking(self):
        state, effects = await self.machine.advance(interval_state(), selection("2", 12))

        assert state == Tracking(station=ALEXANDERPLATZ.name, line="S7 (Potsdam Hbf)")
        assert sent_texts(effects) == [self.formatter.tracking_started(2)]
        assert self.registry.is_active(USER_ID)

        assert self.registry.get(USER_ID).get_name() == f"tracking-{USER_ID}"

        # The first tick retracts the interval prompt and posts the progress
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert self.notifier.sent[0] == {"op": "delete_message", "chat_id": CHAT_ID, "message_id": 12}
        assert self.notifier.sent[1]["options"] == [CANCEL_OPTION]

        await self.cleanup_tasks()

    @pytest.mark.asyncio
    async def test_start_while_tracking(self):
        state, _ = await self.machine.advance(interval_state(), selection("1"))

        new_state, effects = await self.machine.advance(state, command("start"))

        assert new_state == state
        assert sent_texts(effects) == [self.formatter.tracking_in_progress()]
        assert self.registry.is_active(USER_ID)

        await self.cleanup_tasks()

    @pytest.mark.asyncio
    async def test_cancel_button_stops_tracking(self):
        state, _ = await self.machine.advance(interval_state(), selection("1"))
        task = self.registry.get(USER_ID)

        # Let the first tick run
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        new_state, effects = await self.machine.advance(state, selection(CANCEL_OPTION, 20))
        await asyncio.gather(task, return_exceptions=True)

        assert isinstance(new_state, Idle)
        assert effects[0] == ClearOptions(message_id=20)
        assert sent_texts(effects) == [self.formatter.cancelled()]
        assert task.cancelled()
        assert self.registry.get(USER_ID) is None

    @pytest.mark.asyncio
    async def test_cancel_command_from_any_state(self):
        for state in [Idle(), AwaitingCity(), station_state(), line_state(), interval_state()]:
            new_state, effects = await self.machine.advance(state, command("cancel"))
            assert isinstance(new_state, Idle)
            assert sent_texts(effects) == [self.formatter.cancelled()]

    @pytest.mark.asyncio
    async def test_help_keeps_state(self):
        for state in [Idle(), AwaitingAddress(city="Berlin"), line_state()]:
            new_state, effects = await self.machine.advance(state, command("help"))
            assert new_state == state
            assert sent_texts(effects) == [self.formatter.help_text()]

    @pytest.mark.asyncio
    async def test_start_restarts_mid_flow(self):
        state, effects = await self.machine.advance(line_state(), command("start"))
        assert isinstance(state, AwaitingCity)

    @pytest.mark.asyncio
    async def test_unhandled_events(self):
        cases = [
            (Idle(), text("hello")),
            (Idle(), command("unknown")),
            (line_state(), text("S7")),
            (Tracking(), text("where is it?")),
        ]
        for state, event in cases:
            new_state, effects = await self.machine.advance(state, event)
            assert new_state == state
            assert sent_texts(effects) == [self.formatter.unhandled()]
