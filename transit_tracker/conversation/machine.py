"""
Conversation state machine: address -> station -> line -> interval -> tracking.

`advance(state, event)` is the only entry point. It looks the pair up in an
explicit transition table, performs the I/O that transition needs and
returns the next state plus the outbound effects for the chat.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple, Type

from transit_tracker.bot.response_formatter import (
    CANCEL_OPTION,
    CHANGE_ADDRESS_OPTION,
    ResponseFormatter,
    get_response_formatter,
)
from transit_tracker.conversation.events import (
    ClearOptions,
    CommandReceived,
    DeleteMessage,
    EditMessage,
    Effect,
    Event,
    LocationReceived,
    SelectionReceived,
    SendMessage,
    TextReceived,
)
from transit_tracker.conversation.states import (
    AwaitingAddress,
    AwaitingCity,
    AwaitingInterval,
    AwaitingLine,
    AwaitingStation,
    ConversationState,
    Idle,
    LineChoice,
    Tracking,
)
from transit_tracker.gateways.geocoding_client import GeocodingClient, GeocodingError
from transit_tracker.gateways.transit_client import TransitAPIError, TransitClient
from transit_tracker.storage.profile_store import ProfileStore, ProfileStoreError
from transit_tracker.tracker.models import Departure, Station, TrackingSession, UserProfile
from transit_tracker.tracker.notifier import BaseNotifier
from transit_tracker.tracker.scheduler import FinishedCallback, TrackingScheduler, start_tracking
from transit_tracker.tracker.task_registry import TaskRegistry
from transit_tracker.utils.config import get_settings
from transit_tracker.utils.logger import get_logger

logger = get_logger()


class Transition(NamedTuple):
    state: ConversationState
    effects: List[Effect]


TransitionHandler = Callable[[ConversationState, Event], Awaitable[Transition]]


def match_station(stations: Sequence[Station], data: str) -> Optional[Station]:
    """
    Find the selected station: exact name first, then a unique prefix.

    Button data can be a truncated station name, hence the prefix step. An
    ambiguous prefix matches nothing.
    """
    data = data.strip()
    if not data:
        return None

    for station in stations:
        if station.name == data:
            return station

    candidates = [s for s in stations if s.name.startswith(data)]
    if len(candidates) == 1:
        return candidates[0]
    if len(candidates) > 1:
        logger.warning(f"Ambiguous station selection '{data}' ({len(candidates)} candidates)")
    return None


def match_line(lines: Sequence[LineChoice], data: str) -> Optional[LineChoice]:
    """Find the selected line by its "{name} ({direction})" key, exact first, then unique prefix."""
    data = data.strip()
    if not data:
        return None

    for line in lines:
        if line.key == data:
            return line

    candidates = [line for line in lines if line.key.startswith(data)]
    if len(candidates) == 1:
        return candidates[0]
    return None


def line_choices(departures: Sequence[Departure]) -> List[LineChoice]:
    """Distinct (line, direction) pairs in departure order."""
    seen = set()
    choices = []
    for departure in departures:
        if departure.key in seen:
            continue
        seen.add(departure.key)
        choices.append(LineChoice(line_name=departure.line_name, direction=departure.direction))
    return choices


class ConversationMachine:
    """
    Drives one chat through the selection flow.

    Collaborators are injected; nothing is read from globals except settings
    defaults.
    """

    def __init__(
        self,
        geocoder: GeocodingClient,
        transit_client: TransitClient,
        profile_store: ProfileStore,
        registry: TaskRegistry,
        notifier: BaseNotifier,
        formatter: Optional[ResponseFormatter] = None,
        interval_choices: Optional[Sequence[int]] = None,
        keyboard_columns: Optional[int] = None,
        on_tracking_finished: Optional[FinishedCallback] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = get_settings()
        self.geocoder = geocoder
        self.transit_client = transit_client
        self.profile_store = profile_store
        self.registry = registry
        self.notifier = notifier
        self.formatter = formatter or get_response_formatter()
        self.interval_choices = list(interval_choices or settings.interval_choices)
        self.keyboard_columns = keyboard_columns or settings.keyboard_columns
        self.on_tracking_finished = on_tracking_finished
        self._sleep = sleep

        self._transitions: Dict[Tuple[Type, Type], TransitionHandler] = {
            (AwaitingCity, TextReceived): self._receive_city,
            (AwaitingCity, LocationReceived): self._missing_city,
            (AwaitingAddress, TextReceived): self._receive_address_text,
            (AwaitingAddress, LocationReceived): self._receive_address_location,
            (AwaitingStation, SelectionReceived): self._receive_station,
            (AwaitingStation, TextReceived): self._receive_station,
            (AwaitingLine, SelectionReceived): self._receive_line,
            (AwaitingInterval, SelectionReceived): self._receive_interval,
            (Tracking, SelectionReceived): self._receive_tracking_selection,
        }

        self._commands: Dict[str, TransitionHandler] = {
            "start": self._command_start,
            "cancel": self._command_cancel,
            "help": self._command_help,
        }

    async def advance(self, state: ConversationState, event: Event) -> Transition:
        """
        Apply one event to the current state of a chat.

        Args:
            state: Current conversation state
            event: Inbound event

        Returns:
            Transition: Next state and effects to render
        """
        if isinstance(event, CommandReceived):
            handler = self._commands.get(event.command, self._unhandled)
        else:
            handler = self._transitions.get((type(state), type(event)), self._unhandled)

        transition = await handler(state, event)

        if transition.state.kind != state.kind:
            logger.info(
                f"Chat {event.chat_id}: {state.kind} --{event.kind}--> {transition.state.kind}"
            )
        return transition

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _command_start(self, state, event: CommandReceived) -> Transition:
        if isinstance(state, Tracking) and self.registry.is_active(event.user_id):
            return Transition(state, [SendMessage(text=self.formatter.tracking_in_progress())])

        profile = self.profile_store.get(event.user_id)
        if profile is None:
            return Transition(AwaitingCity(), [SendMessage(text=self.formatter.city_prompt())])

        logger.info("Found stored address")
        return await self._offer_stations(
            city=profile.city,
            address=profile.address,
            lat=profile.lat,
            lon=profile.lon,
            returning_user=True,
            unchanged=Idle(),
        )

    async def _command_cancel(self, state, event: CommandReceived) -> Transition:
        return self._cancel(event, message_id=None)

    async def _command_help(self, state, event: CommandReceived) -> Transition:
        return Transition(state, [SendMessage(text=self.formatter.help_text())])

    async def _unhandled(self, state, event: Event) -> Transition:
        logger.debug(f"Unhandled {event.kind} in state {state.kind} for chat {event.chat_id}")
        return Transition(state, [SendMessage(text=self.formatter.unhandled())])

    def _cancel(self, event: Event, message_id: Optional[int]) -> Transition:
        self.registry.cancel(event.user_id)

        effects: List[Effect] = []
        if message_id is not None:
            effects.append(ClearOptions(message_id=message_id))
        effects.append(SendMessage(text=self.formatter.cancelled()))
        return Transition(Idle(), effects)

    # ------------------------------------------------------------------
    # Address
    # ------------------------------------------------------------------

    async def _receive_city(self, state: AwaitingCity, event: TextReceived) -> Transition:
        city = event.text.strip()
        if not city:
            return await self._missing_city(state, event)
        return Transition(
            AwaitingAddress(city=city),
            [SendMessage(text=self.formatter.address_prompt(city))],
        )

    async def _missing_city(self, state, event) -> Transition:
        return Transition(state, [SendMessage(text=self.formatter.missing_city())])

    async def _receive_address_text(self, state: AwaitingAddress, event: TextReceived) -> Transition:
        address = event.text.strip()
        if not address:
            return Transition(state, [SendMessage(text=self.formatter.missing_address())])

        try:
            lat, lon = await self.geocoder.resolve(address, state.city)
        except GeocodingError as e:
            logger.warning(f"Geocoding failed for chat {event.chat_id}: {e}")
            return Transition(state, [SendMessage(text=self.formatter.geocoding_error())])

        return await self._resolved_address(state, event, address, lat, lon)

    async def _receive_address_location(
        self, state: AwaitingAddress, event: LocationReceived
    ) -> Transition:
        try:
            address = await self.geocoder.reverse_resolve(event.latitude, event.longitude)
        except GeocodingError as e:
            logger.warning(f"Reverse geocoding failed for chat {event.chat_id}: {e}")
            return Transition(state, [SendMessage(text=self.formatter.geocoding_error())])

        return await self._resolved_address(state, event, address, event.latitude, event.longitude)

    async def _resolved_address(
        self, state: AwaitingAddress, event: Event, address: str, lat: float, lon: float
    ) -> Transition:
        try:
            self.profile_store.put(
                UserProfile(id=event.user_id, city=state.city, address=address, lat=lat, lon=lon)
            )
        except ProfileStoreError as e:
            logger.error(f"Could not store profile: {e}")

        return await self._offer_stations(
            city=state.city,
            address=address,
            lat=lat,
            lon=lon,
            returning_user=False,
            unchanged=state,
        )

    async def _offer_stations(
        self,
        city: str,
        address: str,
        lat: float,
        lon: float,
        returning_user: bool,
        unchanged: ConversationState,
    ) -> Transition:
        """Fetch nearby stations and offer them, with "change address" last."""
        try:
            stations = await self.transit_client.nearby_stations(lat, lon)
        except TransitAPIError as e:
            logger.warning(f"Nearby stations lookup failed: {e}")
            return Transition(unchanged, [SendMessage(text=self.formatter.upstream_error())])

        if not stations:
            return Transition(Idle(), [SendMessage(text=self.formatter.no_stations(address, city))])

        options = [s.name for s in stations] + [CHANGE_ADDRESS_OPTION]
        return Transition(
            AwaitingStation(city=city, address=address, stations=stations),
            [
                SendMessage(
                    text=self.formatter.station_list(address, city, returning_user),
                    options=options,
                    columns=self.keyboard_columns,
                )
            ],
        )

    # ------------------------------------------------------------------
    # Station and line
    # ------------------------------------------------------------------

    async def _receive_station(self, state: AwaitingStation, event) -> Transition:
        if isinstance(event, SelectionReceived):
            data, message_id = event.data, event.message_id
        else:
            data, message_id = event.text, None

        if data.strip() == CHANGE_ADDRESS_OPTION:
            prompt = self.formatter.change_address_prompt()
            effect = (
                EditMessage(message_id=message_id, text=prompt)
                if message_id is not None else SendMessage(text=prompt)
            )
            return Transition(AwaitingAddress(city=state.city), [effect])

        station = match_station(state.stations, data)
        if station is None:
            if isinstance(event, TextReceived):
                return Transition(state, [SendMessage(text=self.formatter.unhandled())])
            return self._restart_required(message_id)

        try:
            departures = await self.transit_client.departures(station.id)
        except TransitAPIError as e:
            logger.warning(f"Departures lookup failed for {station.id}: {e}")
            return Transition(state, [SendMessage(text=self.formatter.upstream_error())])

        effects: List[Effect] = []
        if message_id is not None:
            effects.append(ClearOptions(message_id=message_id))

        if not departures:
            effects.append(SendMessage(text=self.formatter.no_departures()))
            return Transition(Idle(), effects)

        lines = line_choices(departures)
        effects.append(SendMessage(text=self.formatter.departure_board(station.name, departures)))
        effects.append(
            SendMessage(
                text=self.formatter.select_line(),
                options=[line.key for line in lines],
                columns=self.keyboard_columns,
            )
        )
        return Transition(
            AwaitingLine(
                city=state.city,
                address=state.address,
                stations=state.stations,
                station=station.name,
                station_id=station.id,
                lines=lines,
            ),
            effects,
        )

    async def _receive_line(self, state: AwaitingLine, event: SelectionReceived) -> Transition:
        line = match_line(state.lines, event.data)
        if line is None:
            return self._restart_required(event.message_id)

        effects: List[Effect] = []
        if event.message_id is not None:
            effects.append(DeleteMessage(message_id=event.message_id))
        effects.append(
            SendMessage(
                text=self.formatter.interval_prompt(),
                options=[str(m) for m in self.interval_choices],
                columns=min(len(self.interval_choices), 4),
            )
        )
        return Transition(
            AwaitingInterval(
                city=state.city,
                address=state.address,
                stations=state.stations,
                station=state.station,
                station_id=state.station_id,
                line=line.key,
                line_name=line.line_name,
                direction=line.direction,
            ),
            effects,
        )

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    async def _receive_interval(self, state: AwaitingInterval, event: SelectionReceived) -> Transition:
        data = event.data.strip()
        if not data.isdecimal() or int(data) not in self.interval_choices:
            return Transition(state, [SendMessage(text=self.formatter.invalid_interval())])

        minutes = int(data)
        session = TrackingSession(
            user_id=event.user_id,
            chat_id=event.chat_id,
            station_id=state.station_id,
            station_name=state.station,
            line_name=state.line_name,
            direction=state.direction,
            poll_interval_minutes=minutes,
            started_at=event.received_at,
            prompt_message_id=event.message_id,
        )

        scheduler = TrackingScheduler(
            session=session,
            transit_client=self.transit_client,
            notifier=self.notifier,
            formatter=self.formatter,
            sleep=self._sleep,
            on_finished=self._tracking_finished,
        )
        start_tracking(scheduler, self.registry)

        return Transition(
            Tracking(station=state.station, line=state.line),
            [SendMessage(text=self.formatter.tracking_started(minutes))],
        )

    async def _receive_tracking_selection(self, state: Tracking, event: SelectionReceived) -> Transition:
        if event.data.strip() == CANCEL_OPTION:
            return self._cancel(event, message_id=event.message_id)
        return await self._unhandled(state, event)

    async def _tracking_finished(self, session: TrackingSession, outcome) -> None:
        if self.on_tracking_finished is not None:
            await self.on_tracking_finished(session, outcome)

    def _restart_required(self, message_id: Optional[int]) -> Transition:
        """A button referenced something no longer in context: start over."""
        effects: List[Effect] = []
        if message_id is not None:
            effects.append(ClearOptions(message_id=message_id))
        effects.append(SendMessage(text=self.formatter.restart_required()))
        return Transition(Idle(), effects)
