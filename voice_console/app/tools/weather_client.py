"""Forecast client backing the ``get_weather`` tool."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from shared.errors import ToolError
from shared.schemas import Coordinates, GetWeatherRequest, Measurement, WeatherReport

_LOGGER = logging.getLogger(__name__)

GET_WEATHER_DESCRIPTION = (
    "Retrieves the weather for a given lat, lng coordinate pair. Specify a label for the location."
)


class MapState:
    """Map centre and weather marker shown to the user.

    Attributes:
        coords: Current map centre.
        marker: Last looked-up location, with measurements once available.
    """

    def __init__(self, default_lat: float, default_lng: float) -> None:
        self._default = Coordinates(lat=default_lat, lng=default_lng)
        self.coords = self._default.model_copy()
        self.marker: Coordinates | None = None

    def reset(self) -> None:
        self.coords = self._default.model_copy()
        self.marker = None


class WeatherClient:
    """Thin async client for the Open-Meteo current-conditions endpoint."""

    def __init__(self, base_url: str, map_state: MapState, timeout_s: float = 10.0) -> None:
        """Initializes the forecast client.

        Args:
            base_url: Forecast endpoint URL.
            map_state: Map state updated by each lookup.
            timeout_s: Request timeout.
        """
        self.base_url = base_url
        self.map_state = map_state
        self._client = httpx.AsyncClient(timeout=timeout_s)

    async def _current(self, lat: float, lng: float) -> tuple[Measurement, Measurement]:
        """Fetches current temperature and wind speed.

        Raises:
            httpx.HTTPError: If the request fails or returns a non-2xx status.
            ToolError: If the response body lacks the expected fields.

        Returns:
            Temperature and wind speed measurements with units.
        """
        started = time.monotonic()
        response = await self._client.get(
            self.base_url,
            params={
                "latitude": lat,
                "longitude": lng,
                "current": "temperature_2m,wind_speed_10m",
            },
        )
        _LOGGER.debug(
            "Forecast HTTP response received.",
            extra={
                "status_code": response.status_code,
                "latency_ms": int((time.monotonic() - started) * 1000),
            },
        )
        response.raise_for_status()
        body = response.json()
        try:
            current = body["current"]
            units = body["current_units"]
            temperature = Measurement(value=current["temperature_2m"], units=units["temperature_2m"])
            wind_speed = Measurement(value=current["wind_speed_10m"], units=units["wind_speed_10m"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ToolError("Forecast response is missing current conditions", tool_name="get_weather") from exc
        return temperature, wind_speed

    async def get_weather(self, request: GetWeatherRequest) -> dict[str, Any]:
        """Handles the ``get_weather`` tool.

        The marker and map centre move to the requested location before the
        lookup, and the marker gains measurements once it succeeds.

        Raises:
            ToolError: If the forecast service cannot be reached or returns
                an unusable response.

        Returns:
            Serialized ``WeatherReport``.
        """
        location = Coordinates(lat=request.lat, lng=request.lng, location=request.location)
        self.map_state.marker = location
        self.map_state.coords = location.model_copy()
        try:
            temperature, wind_speed = await self._current(request.lat, request.lng)
        except httpx.HTTPError as exc:
            raise ToolError(f"Weather lookup failed: {exc}", tool_name="get_weather") from exc
        self.map_state.marker = location.model_copy(update={"temperature": temperature, "wind_speed": wind_speed})
        report = WeatherReport(
            location=request.location,
            lat=request.lat,
            lng=request.lng,
            temperature=temperature,
            wind_speed=wind_speed,
        )
        return report.model_dump()

    async def close(self) -> None:
        """Closes the underlying HTTP client."""
        await self._client.aclose()
