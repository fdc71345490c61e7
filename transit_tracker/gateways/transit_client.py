"""
Transit data client for the transport.rest HAFAS API.

Fetches nearby stations and upcoming departures and normalizes them into
Station / Departure models. Every call is bounded by an HTTP timeout so that
a stalled upstream never blocks a tracking session indefinitely.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from transit_tracker.tracker.models import Departure, Location, Station
from transit_tracker.utils.config import get_settings
from transit_tracker.utils.logger import get_logger

logger = get_logger()


class TransitAPIError(Exception):
    """Exception raised for transit API errors (network, HTTP status, payload)."""
    pass


class TransitClient:
    """
    Client for the transport.rest REST API (v5 and v6 payloads).

    An empty departures list is a valid answer (no current service), not an
    error.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        nearby_results: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize transit client.

        Args:
            base_url: API root (reads from settings if None)
            timeout: Request timeout in seconds (reads from settings if None)
            nearby_results: Number of nearby stations to request
            transport: Optional httpx transport (used by tests)
        """
        self.settings = get_settings()
        self.base_url = (base_url or self.settings.transit_api_base_url).rstrip("/")
        self.timeout = timeout or self.settings.http_timeout_seconds
        self.nearby_results = nearby_results or self.settings.transit_nearby_results
        self._transport = transport

        logger.info(f"✅ Transit client initialized ({self.base_url})")

    async def nearby_stations(self, lat: float, lon: float) -> List[Station]:
        """
        Get stations near a coordinate, ordered by distance.

        Args:
            lat: Latitude
            lon: Longitude

        Returns:
            List[Station]: Nearby stations

        Raises:
            TransitAPIError: If the API call fails
        """
        payload = await self._get_json(
            "/stops/nearby",
            params={
                "latitude": lat,
                "longitude": lon,
                "results": self.nearby_results,
            },
        )
        if not isinstance(payload, list):
            raise TransitAPIError("Unexpected nearby stations payload")

        stations = []
        for item in payload:
            station = self._parse_station(item)
            if station is not None:
                stations.append(station)

        logger.debug(f"Found {len(stations)} stations near ({lat}, {lon})")
        return stations

    async def departures(self, station_id: str) -> List[Departure]:
        """
        Get upcoming departures for a station.

        Args:
            station_id: Provider station ID

        Returns:
            List[Departure]: Departures (possibly empty)

        Raises:
            TransitAPIError: If the API call fails
        """
        payload = await self._get_json(f"/stops/{station_id}/departures")

        # v5 answers with a bare list, v6 wraps it
        if isinstance(payload, dict):
            payload = payload.get("departures", [])
        if not isinstance(payload, list):
            raise TransitAPIError("Unexpected departures payload")

        departures = []
        for item in payload:
            departure = self._parse_departure(item, station_id)
            if departure is not None:
                departures.append(departure)

        logger.debug(f"Fetched {len(departures)} departures for station {station_id}")
        return departures

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a path and decode its JSON body, mapping failures to TransitAPIError."""
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            ) as client:
                response = await client.get(url, params=params)
        except httpx.HTTPError as e:
            logger.warning(f"Transit API request failed ({url}): {e}")
            raise TransitAPIError(f"Request to {url} failed: {e}") from e

        if response.status_code != 200:
            logger.warning(f"Transit API returned HTTP {response.status_code} for {url}")
            raise TransitAPIError(f"HTTP {response.status_code} from {url}")

        try:
            return response.json()
        except ValueError as e:
            raise TransitAPIError(f"Invalid JSON from {url}") from e

    def _parse_station(self, data: Any, distance: Optional[int] = None) -> Optional[Station]:
        """Convert a stop/station object into a Station, or None if malformed."""
        if not isinstance(data, dict):
            return None
        try:
            location = data.get("location") or {}
            # Names come as "Alexanderplatz, Berlin": keep the part before the comma
            name = str(data["name"]).split(",", 1)[0].strip()
            return Station(
                id=str(data["id"]),
                name=name,
                location=Location(
                    latitude=float(location["latitude"]),
                    longitude=float(location["longitude"]),
                ),
                distance=int(data.get("distance", -1)) if distance is None else distance,
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed station entry: {e}")
            return None

    def _parse_departure(self, data: Any, station_id: str) -> Optional[Departure]:
        """Convert a departure object into a Departure, or None if malformed."""
        if not isinstance(data, dict):
            return None
        try:
            planned = datetime.fromisoformat(data["plannedWhen"])
            if planned.tzinfo is None:
                raise ValueError("plannedWhen has no timezone")

            delay = data.get("delay")
            position = data.get("currentTripPosition")
            destination = data.get("destination")

            return Departure(
                station_id=station_id,
                line_name=str(data["line"]["name"]),
                planned_time=planned,
                delay_seconds=int(delay) if delay is not None else None,
                direction=str(data["direction"]),
                destination=(
                    self._parse_station(destination, distance=-1)
                    if destination else None
                ),
                current_position=(
                    Location(
                        latitude=float(position["latitude"]),
                        longitude=float(position["longitude"]),
                    )
                    if position else None
                ),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed departure entry for {station_id}: {e}")
            return None
