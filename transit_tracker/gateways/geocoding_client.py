"""Geocoding via OpenStreetMap Nominatim."""

from typing import Any, Optional, Tuple

import httpx

from transit_tracker.utils.config import get_settings
from transit_tracker.utils.logger import get_logger

logger = get_logger()


class GeocodingError(Exception):
    """Exception raised when an address cannot be resolved."""
    pass


class GeocodingClient:
    """Forward and reverse geocoding against a Nominatim instance."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = get_settings()
        self.base_url = (base_url or self.settings.geocoder_base_url).rstrip("/")
        # Nominatim's usage policy requires an identifying user agent
        self.user_agent = user_agent or self.settings.geocoder_user_agent
        self.timeout = timeout or self.settings.http_timeout_seconds
        self._transport = transport

    async def resolve(self, address: str, city: str) -> Tuple[float, float]:
        """
        Resolve a street address within a city to coordinates.

        Args:
            address: Street address
            city: City name

        Returns:
            (latitude, longitude)

        Raises:
            GeocodingError: If the lookup fails or finds nothing
        """
        results = await self._get_json(
            "/search",
            params={"street": address, "city": city, "format": "json", "limit": 1},
        )
        if not isinstance(results, list) or not results:
            raise GeocodingError(f"No match for '{address}, {city}'")

        try:
            lat = float(results[0]["lat"])
            lon = float(results[0]["lon"])
        except (KeyError, TypeError, ValueError) as e:
            raise GeocodingError(f"Malformed geocoding result: {e}") from e

        logger.debug(f"Geocoded '{address}, {city}' -> ({lat}, {lon})")
        return lat, lon

    async def reverse_resolve(self, lat: float, lon: float) -> str:
        """
        Resolve coordinates to a street address ("road house_number").

        Raises:
            GeocodingError: If the lookup fails or finds nothing
        """
        result = await self._get_json(
            "/reverse",
            params={"lat": lat, "lon": lon, "format": "json"},
        )
        if not isinstance(result, dict) or "error" in result:
            raise GeocodingError(f"No address found at ({lat}, {lon})")

        parts = result.get("address") or {}
        road = parts.get("road") or parts.get("pedestrian") or ""
        address = f"{road} {parts.get('house_number', '')}".strip()
        if not address:
            address = str(result.get("display_name", "")).split(",", 1)[0].strip()
        if not address:
            raise GeocodingError(f"No address found at ({lat}, {lon})")

        logger.debug(f"Reverse geocoded ({lat}, {lon}) -> '{address}'")
        return address

    async def _get_json(self, path: str, params: dict) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
            ) as client:
                response = await client.get(url, params=params)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            logger.warning(f"Geocoding request failed ({url}): {e}")
            raise GeocodingError(f"Geocoding request failed: {e}") from e
        except ValueError as e:
            raise GeocodingError("Invalid JSON from geocoder") from e
