"""Response formatting for Telegram messages (HTML parse mode)."""

from html import escape
from typing import List, Sequence

from transit_tracker.tracker.models import Departure

CHANGE_ADDRESS_OPTION = "<< Change address"
CANCEL_OPTION = "<< Cancel"

SEPARATOR = "--------------------"
TRUNCATION_MARKER = "..."


class ResponseFormatter:
    """Builds every user-facing text of the bot."""

    # Maximum message length for Telegram
    MAX_MESSAGE_LENGTH = 4096

    def help_text(self) -> str:
        return (
            "I track your transit in your area and send you notifications "
            "with its current location.\n"
            "These commands are supported:\n\n"
            "/start - Start tracking your transit.\n"
            "/cancel - Cancel the tracking.\n"
            "/help - Display this help menu."
        )

    def city_prompt(self) -> str:
        return "🔰 Let's start tracking a transit 🚌🚇!\n\nWhat city do you live in?"

    def address_prompt(self, city: str) -> str:
        return (
            f"Awesome so you live in <b>{escape(city)}</b> 🏙!\n\n"
            "What is your location's <b>street address</b> so I can search "
            "for nearby transit stops?\n"
            "You can also send me a <b>location</b> 📍 instead!"
        )

    def change_address_prompt(self) -> str:
        return "Ok, send me the new <b>street address</b> or a <b>location</b> 📍."

    def missing_city(self) -> str:
        return "❌ Please, send me the city you live in, so I can start tracking."

    def missing_address(self) -> str:
        return "❌ Please, send me your address or a location, so I can start tracking."

    def station_list(self, address: str, city: str, returning_user: bool) -> str:
        if returning_user:
            header = "I found your last used address:"
        else:
            header = "Thank you! So your address is:"
        return (
            f"{header}\n<b>{escape(address)}, {escape(city)} 📍</b>\n\n"
            "Now please select which transit station you want to track 👀.\n\n"
            "Here are the nearby transit stations:"
        )

    def no_stations(self, address: str, city: str) -> str:
        return (
            f"😟 I could not find any transit stations near <b>{escape(address)}, "
            f"{escape(city)}</b>. Please /start over with another address."
        )

    def departure_board(self, station_name: str, departures: Sequence[Departure]) -> str:
        """Departure list of a station with planned times and delays."""
        lines: List[str] = [
            f"🚏 Infos for selected station (+ mins delay): <b>{escape(station_name)}</b>"
        ]
        length = len(lines[0])
        # Room for the closing separator and the "..." marker
        budget = self.MAX_MESSAGE_LENGTH - len(SEPARATOR) - len(TRUNCATION_MARKER) - 2

        for departure in departures:
            planned = departure.planned_time.strftime("%H:%M")
            delay = self.format_delay(departure.delay_seconds)
            row = (
                f"{SEPARATOR}\n<b>{escape(departure.line_name)}</b>, to "
                f"<b>{escape(departure.direction)}</b> on <b>{planned}</b>{delay}"
            )
            # Cut on a row boundary so no HTML tag or entity is split
            if length + 1 + len(row) > budget:
                lines.append(SEPARATOR)
                lines.append(TRUNCATION_MARKER)
                return "\n".join(lines)
            lines.append(row)
            length += 1 + len(row)

        lines.append(SEPARATOR)
        return "\n".join(lines)

    @staticmethod
    def format_delay(delay_seconds) -> str:
        """Delay suffix in whole minutes, empty when on time."""
        if not delay_seconds:
            return ""
        minutes = int(delay_seconds / 60)
        if minutes == 0:
            return ""
        return f" (+{minutes})" if minutes > 0 else f" ({minutes})"

    def no_departures(self) -> str:
        return (
            "😟 Unfortunately, no transit departures were found from this station "
            "at this time. Please /start over!"
        )

    def select_line(self) -> str:
        return "Select a transit:"

    def interval_prompt(self) -> str:
        return "Select how many <b>minutes</b> between each update:"

    def invalid_interval(self) -> str:
        return "❌ Please pick one of the offered update intervals."

    def tracking_started(self, interval_minutes: int) -> str:
        return (
            f"The timer is going to update every <b>{interval_minutes}</b> minute(s)!"
        )

    def progress(self, line: str, minutes: int) -> str:
        return (
            f"🔔 Your transit: <b>{escape(line)}</b> 🚌 arrives in "
            f"<b>{minutes}</b> minutes ⌛!"
        )

    def arriving_now(self, line: str) -> str:
        return f"🔔 Your transit: <b>{escape(line)}</b> 🚌 should arrive now!"

    def position_caption(self) -> str:
        return "Current position of the transit:"

    def departing(self, line: str, station_name: str) -> str:
        return (
            f"🔔 Your transit: <b>{escape(line)}</b> 🚌 is departing from "
            f"<b>{escape(station_name)}</b>!"
        )

    def line_unavailable(self, line: str, station_name: str) -> str:
        return (
            f"🔔 Your transit: <b>{escape(line)}</b> 🚌 is no longer listed at "
            f"<b>{escape(station_name)}</b>. It has departed or is unavailable."
        )

    def cancelled(self) -> str:
        return "🚫 Cancelled! You can start over using /start."

    def tracking_in_progress(self) -> str:
        return "⏳ A transit is already being tracked. Use /cancel to stop it first."

    def restart_required(self) -> str:
        return "⚠️ That selection is no longer available. Please /start over."

    def upstream_error(self) -> str:
        return "❌ I could not reach the transit service right now. Please try again."

    def geocoding_error(self) -> str:
        return (
            "❌ I could not find that address. Please check it and send it again, "
            "or send me a location 📍."
        )

    def unhandled(self) -> str:
        return "Unable to handle the message. Type /help to see the usage."


# Global formatter instance
_formatter: ResponseFormatter | None = None


def get_response_formatter() -> ResponseFormatter:
    """Get or create the global response formatter."""
    global _formatter
    if _formatter is None:
        _formatter = ResponseFormatter()
    return _formatter
