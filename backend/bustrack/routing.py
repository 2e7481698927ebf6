import asyncio
import logging
import math
from typing import List, Optional

import httpx

from .errors import UpstreamUnavailable
from .eta import DEFAULT_SPEED_KMH, estimate_duration_minutes, estimate_eta_minutes, haversine_km
from .schemas import ROUTING_PROFILES, LatLng, RouteResult

logger = logging.getLogger(__name__)


class RouteResolver:
    """
    Road route between a rider and a bus via OpenRouteService.
    Falls back to a straight-line estimate on any failure, so callers always get a result.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.openrouteservice.org",
        timeout: float = 8.0,
        profile: str = "driving-car",
        assumed_speed_kmh: float = DEFAULT_SPEED_KMH,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.profile = profile
        self.assumed_speed_kmh = assumed_speed_kmh
        self._transport = transport
        if not api_key:
            logger.warning("OpenRouteService API key not configured, using straight-line distance")

    @classmethod
    def from_settings(cls, settings, transport=None) -> "RouteResolver":
        return cls(
            api_key=settings.openroute_api_key,
            base_url=settings.routing_base_url,
            timeout=settings.routing_timeout_seconds,
            profile=settings.routing_profile,
            assumed_speed_kmh=settings.assumed_speed_kmh,
            transport=transport,
        )

    async def resolve_route(self, origin: LatLng, destination: LatLng, profile: Optional[str] = None) -> RouteResult:
        if not self.api_key:
            return self.straight_line(origin, destination)
        profile = profile or self.profile
        if profile not in ROUTING_PROFILES:
            logger.warning("Unknown routing profile %r, using straight line", profile)
            return self.straight_line(origin, destination)
        try:
            return await asyncio.wait_for(
                self._fetch(origin, destination, profile),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Route calculation timed out after %.1fs, using straight line", self.timeout)
        except UpstreamUnavailable as e:
            logger.warning("Route calculation failed: %s", e.message)
        return self.straight_line(origin, destination)

    async def _fetch(self, origin: LatLng, destination: LatLng, profile: str) -> RouteResult:
        url = f"{self.base_url}/v2/directions/{profile}/geojson"
        body = {
            # OpenRouteService wants [lon, lat]
            "coordinates": [[origin.lng, origin.lat], [destination.lng, destination.lat]],
        }
        headers = {"Authorization": self.api_key, "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, json=body, headers=headers)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamUnavailable(f"provider returned {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamUnavailable(f"{type(e).__name__}: {e}") from e
        return self._parse(data)

    def _parse(self, data) -> RouteResult:
        try:
            feature = data["features"][0]
            summary = feature["properties"]["summary"]
            distance_m = float(summary["distance"])
            duration_s = float(summary["duration"])
            polyline = [LatLng(lat=c[1], lng=c[0]) for c in feature["geometry"]["coordinates"]]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise UpstreamUnavailable(f"malformed response: {e!r}") from e

        exact = duration_s / 60
        return RouteResult(
            distance_km=distance_m / 1000,
            duration_min=math.ceil(exact),
            duration_min_exact=exact,
            polyline=polyline,
            is_fallback=False,
        )

    def straight_line(self, origin: LatLng, destination: LatLng) -> RouteResult:
        """Haversine distance at the assumed average speed."""
        distance = haversine_km((origin.lat, origin.lng), (destination.lat, destination.lng))
        return RouteResult(
            distance_km=distance,
            duration_min=estimate_eta_minutes(distance, self.assumed_speed_kmh),
            duration_min_exact=estimate_duration_minutes(distance, self.assumed_speed_kmh),
            polyline=self._segment(origin, destination),
            is_fallback=True,
        )

    @staticmethod
    def _segment(origin: LatLng, destination: LatLng) -> List[LatLng]:
        return [LatLng(lat=origin.lat, lng=origin.lng), LatLng(lat=destination.lat, lng=destination.lng)]
