from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple
from uuid import uuid4

import httpx

from emergency_geo.config import (
    ISOCHRONE_COLORS,
    ROUTING_BASE_URL,
    ROUTING_RETRY_BACKOFF_SECONDS,
    ROUTING_TIMEOUT_SECONDS,
)
from emergency_geo.errors import GeometryError, RoutingError
from emergency_geo.geometry import GeometryKernel
from emergency_geo.models import IsochroneZone, LonLat, Polygon, RouteInfo

logger = logging.getLogger(__name__)


def _format_lon_lat(point: LonLat) -> str:
    return f"{point[0]},{point[1]}"


def _band_colors(count: int) -> Tuple[str, ...]:
    return tuple(ISOCHRONE_COLORS[i % len(ISOCHRONE_COLORS)] for i in range(count))


def parse_isochrone_polygons(payload: Any, band_count: int) -> Tuple[Polygon, ...]:
    """Validate a GeoJSON FeatureCollection holding one polygon per requested band."""
    if not isinstance(payload, dict) or not isinstance(payload.get("features"), list):
        raise RoutingError("Isochrone response is not a FeatureCollection")
    features = payload["features"]
    if len(features) != band_count:
        raise RoutingError(f"Expected {band_count} isochrone polygons, got {len(features)}")

    polygons = []
    for feature in features:
        geometry = (feature or {}).get("geometry") or {}
        if geometry.get("type") != "Polygon":
            raise RoutingError(f"Isochrone feature is not a Polygon: {geometry.get('type')!r}")
        try:
            ring = GeometryKernel.validate_ring(geometry["coordinates"][0])
        except (GeometryError, KeyError, IndexError, TypeError) as exc:
            raise RoutingError(f"Malformed isochrone polygon: {exc}") from exc
        polygons.append(Polygon(ring=ring))
    return tuple(polygons)


def parse_route(payload: Any, origin: LonLat, destination: LonLat) -> RouteInfo:
    try:
        route = payload["routes"][0]
        polyline = tuple((float(p[0]), float(p[1])) for p in route["geometry"]["coordinates"])
        distance_m = float(route["distance"])
        duration_s = float(route["duration"])
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise RoutingError(f"Malformed route response: {exc}") from exc
    return RouteInfo(
        id=f"route-{uuid4().hex}",
        origin=origin,
        destination=destination,
        distance_km=distance_m / 1000,
        duration_minutes=round(duration_s / 60),
        polyline=polyline,
    )


class IsochroneAdapter:
    """Client of the external routing service.

    Each call retries once after a short backoff and then raises ``RoutingError``.
    A newer ``fetch`` for the same center cancels the in-flight older one.
    """

    def __init__(
        self,
        base_url: str = ROUTING_BASE_URL,
        timeout: float = ROUTING_TIMEOUT_SECONDS,
        retry_backoff: float = ROUTING_RETRY_BACKOFF_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_backoff = retry_backoff
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._in_flight: Dict[str, asyncio.Task] = {}

    async def get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str, params: dict) -> Any:
        client = await self.get_client()
        try:
            response = await client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as exc:
            raise RoutingError(f"Routing request {path} failed: {exc}") from exc
        except ValueError as exc:
            raise RoutingError(f"Routing response for {path} is not JSON") from exc

    async def _with_retry(self, call: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await call()
        except RoutingError as exc:
            logger.warning("Routing call failed, retrying in %.2fs: %s", self.retry_backoff, exc)
        await asyncio.sleep(self.retry_backoff)
        return await call()

    async def _fetch_once(self, center: LonLat, bands: Tuple[int, ...]) -> IsochroneZone:
        payload = await self._get_json(
            "/isochrone",
            {
                "center": _format_lon_lat(center),
                "bands": ",".join(str(b) for b in bands),
                "polygons": "true",
            },
        )
        return IsochroneZone(
            id=f"isochrone-{uuid4().hex}",
            center=center,
            time_bands_minutes=bands,
            colors=_band_colors(len(bands)),
            geometry=parse_isochrone_polygons(payload, len(bands)),
        )

    async def fetch(self, center: LonLat, time_bands_minutes: Sequence[int] = (5, 10)) -> IsochroneZone:
        bands = tuple(int(b) for b in time_bands_minutes)
        if not bands or any(b <= 0 for b in bands):
            raise RoutingError(f"Time bands must be positive minutes, got {list(time_bands_minutes)}")

        key = _format_lon_lat(center)
        previous = self._in_flight.get(key)
        if previous is not None and not previous.done():
            logger.info("Cancelling superseded isochrone request for %s", key)
            previous.cancel()

        task = asyncio.ensure_future(self._with_retry(lambda: self._fetch_once(center, bands)))
        self._in_flight[key] = task
        try:
            return await task
        finally:
            if self._in_flight.get(key) is task:
                del self._in_flight[key]

    async def route(self, origin: LonLat, destination: LonLat) -> RouteInfo:
        async def call() -> RouteInfo:
            payload = await self._get_json(
                "/directions",
                {"origin": _format_lon_lat(origin), "destination": _format_lon_lat(destination)},
            )
            return parse_route(payload, origin, destination)

        return await self._with_retry(call)
