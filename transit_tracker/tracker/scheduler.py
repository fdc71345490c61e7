"""
Tracking Scheduler for one user's selected departure.

Polls the transit API on an adaptive cadence, keeps a single up-to-date
progress message in the chat and stops when the departure leaves, when the
line disappears from the feed, or when the task is cancelled.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from transit_tracker.bot.response_formatter import (
    CANCEL_OPTION,
    ResponseFormatter,
    get_response_formatter,
)
from transit_tracker.gateways.transit_client import TransitAPIError, TransitClient
from transit_tracker.tracker.models import Departure, TrackingOutcome, TrackingSession
from transit_tracker.tracker.notifier import BaseNotifier
from transit_tracker.tracker.task_registry import TaskRegistry
from transit_tracker.utils.logger import get_logger

logger = get_logger()

FinishedCallback = Callable[[TrackingSession, TrackingOutcome], Awaitable[None]]


class TrackingScheduler:
    """
    Background polling loop for a single TrackingSession.

    Time is reasoned about in ticks: the logical clock advances by exactly
    the current interval on every tick instead of reading the wall clock, so
    send latency never accumulates into the remaining-time math.
    """

    def __init__(
        self,
        session: TrackingSession,
        transit_client: TransitClient,
        notifier: BaseNotifier,
        formatter: Optional[ResponseFormatter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_finished: Optional[FinishedCallback] = None,
    ):
        """
        Initialize tracking scheduler.

        Args:
            session: Session to track (a private copy is taken)
            transit_client: Transit API client
            notifier: Output channel for progress and terminal notices
            formatter: Message formatter (global one if None)
            sleep: Awaitable sleep, in seconds
            on_finished: Called once after a terminal notice (not on cancellation)
        """
        self.session = session.model_copy()
        self.transit_client = transit_client
        self.notifier = notifier
        self.formatter = formatter or get_response_formatter()
        self._sleep = sleep
        self._on_finished = on_finished

        # Messages of the previous tick, retracted before the next one is sent
        self._previous_messages: List[int] = []
        if session.prompt_message_id is not None:
            self._previous_messages.append(session.prompt_message_id)

        self.outcome: Optional[TrackingOutcome] = None
        self.tick_count = 0
        self.error_count = 0
        self.last_error: Optional[str] = None
        self.interval_history: List[int] = []

    @property
    def interval_minutes(self) -> int:
        return self.session.poll_interval_minutes

    async def run(self) -> TrackingOutcome:
        """
        Run the polling loop until a terminal condition.

        Returns:
            TrackingOutcome: DEPARTED or NOT_FOUND

        Raises:
            asyncio.CancelledError: When cancelled through the task registry
        """
        with logger.contextualize(user_id=self.session.user_id):
            try:
                return await self._poll()
            finally:
                logger.info(f"Tracking summary: {self.get_health_status()}")

    async def _poll(self) -> TrackingOutcome:
        session = self.session
        logger.info(
            f"Tracking started: {session.line} at {session.station_name} "
            f"every {session.poll_interval_minutes} min"
        )

        # The first tick fires immediately and lands exactly on started_at
        logical_now = session.started_at - timedelta(minutes=session.poll_interval_minutes)
        first_tick = True

        try:
            while True:
                if not first_tick:
                    await self._sleep(session.poll_interval_minutes * 60)
                first_tick = False

                logical_now += timedelta(minutes=session.poll_interval_minutes)
                session.last_known_tick_time = logical_now

                try:
                    outcome = await self._tick(logical_now)
                    self.last_error = None
                except TransitAPIError as e:
                    # Transient: retried on the next tick
                    self.error_count += 1
                    self.last_error = str(e)
                    logger.warning(
                        f"Transit API error while tracking: {e} "
                        f"(error count: {self.error_count})"
                    )
                    continue
                except Exception as e:
                    self.error_count += 1
                    self.last_error = str(e)
                    logger.exception(f"Unexpected error in tracking loop: {e}")
                    continue

                if outcome is not None:
                    break

        except asyncio.CancelledError:
            self.outcome = TrackingOutcome.CANCELLED
            logger.info(f"Tracking cancelled after {self.tick_count} tick(s)")
            raise

        self.outcome = outcome
        await self._finish(outcome)
        return outcome

    async def _tick(self, logical_now: datetime) -> Optional[TrackingOutcome]:
        """Perform one poll. Returns a terminal outcome or None to keep going."""
        session = self.session
        self.tick_count += 1
        self.interval_history.append(session.poll_interval_minutes)

        departures = await self.transit_client.departures(session.station_id)
        departure = self.find_departure(departures, session.line_name, session.direction)
        if departure is None:
            logger.info(f"{session.line} no longer listed at {session.station_name}")
            return TrackingOutcome.NOT_FOUND

        effective = departure.effective_time
        remaining = effective - logical_now
        minutes = int(remaining.total_seconds() / 60)

        logger.debug(
            f"Tick #{self.tick_count}: {minutes} min left, interval {session.poll_interval_minutes} min"
        )

        # Shrink the interval as departure nears; it never grows again
        if session.poll_interval_minutes > 1 and 0 < minutes < session.poll_interval_minutes:
            logger.info(f"Interval reduced {session.poll_interval_minutes} -> {minutes} min")
            session.poll_interval_minutes = minutes

        if logical_now > effective:
            return TrackingOutcome.DEPARTED

        await self._retract_previous()
        await self._publish_progress(departure, minutes)

        if minutes == 0:
            session.poll_interval_minutes = 1

        return None

    @staticmethod
    def find_departure(
        departures: Sequence[Departure],
        line_name: str,
        direction: str,
    ) -> Optional[Departure]:
        """First departure matching the (line name, direction) pair."""
        for departure in departures:
            if departure.line_name == line_name and departure.direction == direction:
                return departure
        return None

    async def _publish_progress(self, departure: Departure, minutes: int) -> None:
        session = self.session

        if departure.current_position is not None:
            caption_id = await self.notifier.send_message(
                session.chat_id, self.formatter.position_caption()
            )
            location_id = await self.notifier.send_location(
                session.chat_id,
                departure.current_position.latitude,
                departure.current_position.longitude,
            )
            self._remember(caption_id, location_id)

        if minutes == 0:
            text = self.formatter.arriving_now(session.line)
        else:
            text = self.formatter.progress(session.line, minutes)

        progress_id = await self.notifier.send_message(
            session.chat_id, text, options=[CANCEL_OPTION], columns=1
        )
        self._remember(progress_id)

    def _remember(self, *message_ids: Optional[int]) -> None:
        self._previous_messages.extend(m for m in message_ids if m is not None)

    async def _retract_previous(self) -> None:
        messages, self._previous_messages = self._previous_messages, []
        for message_id in messages:
            await self.notifier.delete_message(self.session.chat_id, message_id)

    async def _finish(self, outcome: TrackingOutcome) -> None:
        """Retract the last status and emit the terminal notice."""
        session = self.session
        await self._retract_previous()

        if outcome == TrackingOutcome.DEPARTED:
            text = self.formatter.departing(session.line, session.station_name)
        else:
            text = self.formatter.line_unavailable(session.line, session.station_name)
        await self.notifier.send_message(session.chat_id, text)

        logger.info(
            f"Tracking finished: {outcome.value} "
            f"after {self.tick_count} tick(s)"
        )

        if self._on_finished is not None:
            try:
                await self._on_finished(session, outcome)
            except Exception as e:
                logger.exception(f"on_finished callback failed: {e}")

    def get_health_status(self) -> Dict:
        """
        Get health status for this session.

        Returns:
            Health status dictionary
        """
        session = self.session
        return {
            "user_id": session.user_id,
            "station": session.station_name,
            "line": session.line,
            "interval_minutes": session.poll_interval_minutes,
            "last_tick": (
                session.last_known_tick_time.isoformat()
                if session.last_known_tick_time else None
            ),
            "tick_count": self.tick_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "outcome": self.outcome.value if self.outcome else None,
        }


def start_tracking(scheduler: TrackingScheduler, registry: TaskRegistry) -> asyncio.Task:
    """
    Spawn the scheduler as an asyncio task and register it for its user.

    Args:
        scheduler: Scheduler to run
        registry: Task registry

    Returns:
        asyncio.Task: The running task
    """
    user_id = scheduler.session.user_id
    task = asyncio.create_task(scheduler.run(), name=f"tracking-{user_id}")
    registry.register(user_id, task)
    return task
