"""Distance provider: miles between two coordinates.

Asks the routing service first, caches its answers in redis and falls back
to straight-line (haversine) distance when the service is down.
"""

from math import radians, cos, sin, asin, sqrt
from typing import Optional, Tuple
import logging

import httpx

from . import cache
from .config import settings

logger = logging.getLogger(__name__)

EARTH_RADIUS_MILES = 3958.8

Coordinate = Tuple[float, float]


def haversine_miles(a: Coordinate, b: Coordinate) -> float:
    lat1, lon1 = a
    lat2, lon2 = b
    lon1, lat1, lon2, lat2 = map(radians, [lon1, lat1, lon2, lat2])
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * asin(sqrt(h))


def coordinate(lat: Optional[float], lng: Optional[float]) -> Optional[Coordinate]:
    if lat is None or lng is None:
        return None
    return (lat, lng)


class DistanceProvider:
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None, cache_ttl_sec: Optional[int] = None):
        self.base_url = base_url if base_url is not None else settings.ROUTING_SERVICE_URL
        self.timeout = timeout or settings.ROUTING_TIMEOUT_SEC
        self.cache_ttl_sec = cache_ttl_sec or settings.DISTANCE_CACHE_TTL_SEC

    @staticmethod
    def _cache_key(origin: Coordinate, destination: Coordinate) -> str:
        return "distance:%.5f,%.5f:%.5f,%.5f" % (origin[0], origin[1], destination[0], destination[1])

    async def _route(self, origin: Coordinate, destination: Coordinate) -> Optional[float]:
        if not self.base_url:
            return None
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    f"{self.base_url}/distance",
                    json={
                        "origin_lat": origin[0], "origin_lng": origin[1],
                        "destination_lat": destination[0], "destination_lng": destination[1],
                    },
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            logger.warning("routing_call_failed: origin=%s destination=%s error=%s", origin, destination, e)
            return None
        if resp.status_code != 200:
            logger.warning("routing_error: status=%s", resp.status_code)
            return None
        return resp.json().get("distance_miles")

    async def distance_miles(self, origin: Optional[Coordinate], destination: Optional[Coordinate]) -> Optional[float]:
        """Miles between the two points, or None when either is unknown."""
        if origin is None or destination is None:
            return None
        key = self._cache_key(origin, destination)
        cached = await cache.get_json(key)
        if cached is not None:
            return cached

        miles = await self._route(origin, destination)
        if miles is None:
            miles = round(haversine_miles(origin, destination), 2)
            logger.info("distance_fallback: origin=%s destination=%s miles=%.2f", origin, destination, miles)
            return miles
        await cache.set_json(key, miles, self.cache_ttl_sec)
        return miles
