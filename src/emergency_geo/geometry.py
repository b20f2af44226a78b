from __future__ import annotations

import math
from functools import lru_cache
from typing import Iterable, Sequence, Tuple

from shapely.errors import GEOSException
from shapely.geometry import Point
from shapely.geometry import Polygon as ShapelyPolygon

from emergency_geo.errors import GeometryError
from emergency_geo.models import BoundingBox, Circle, Geometry, LonLat, Polygon

EARTH_RADIUS_M = 6371008.8
CIRCLE_SEGMENTS = 64
_EPSILON = 1e-12


def _finite_point(point: Sequence[float]) -> LonLat:
    try:
        lon, lat = float(point[0]), float(point[1])
    except (TypeError, ValueError, IndexError) as exc:
        raise GeometryError(f"Invalid coordinate: {point!r}") from exc
    if not (math.isfinite(lon) and math.isfinite(lat)):
        raise GeometryError(f"Non-finite coordinate: {point!r}")
    return lon, lat


def _open_ring(polygon: Polygon) -> Tuple[LonLat, ...]:
    """Ring vertices without the closing duplicate."""
    if not isinstance(polygon, Polygon):
        raise GeometryError(f"Expected a Polygon, got {type(polygon).__name__}")
    ring = [_finite_point(p) for p in polygon.ring]
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring = ring[:-1]
    if len(set(ring)) < 3:
        raise GeometryError("Polygon needs at least 3 distinct vertices")
    return tuple(ring)


@lru_cache(maxsize=256)
def _shape(ring: Tuple[LonLat, ...]) -> ShapelyPolygon:
    try:
        return ShapelyPolygon(ring)
    except (GEOSException, ValueError) as exc:
        raise GeometryError(f"Cannot build polygon: {exc}") from exc


def wrap_longitude(lon: float, reference: float = 0.0) -> float:
    """Shift lon by whole turns so it lies within 180 degrees of reference."""
    while lon - reference > 180.0:
        lon -= 360.0
    while lon - reference < -180.0:
        lon += 360.0
    return lon


class GeometryKernel:
    """Primitive 2-D operations on [lon, lat] coordinates."""

    @staticmethod
    def distance_meters(a: LonLat, b: LonLat) -> float:
        lon1, lat1 = _finite_point(a)
        lon2, lat2 = _finite_point(b)
        if (lon1, lat1) == (lon2, lat2):
            return 0.0
        phi1, phi2 = math.radians(lat1), math.radians(lat2)
        dphi = phi2 - phi1
        dlmb = math.radians(lon2 - lon1)

        h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
        # Rounding can push h just past 1 for near-antipodal pairs.
        h = min(1.0, max(0.0, h))
        c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
        return EARTH_RADIUS_M * c

    @staticmethod
    def destination(origin: LonLat, distance_m: float, bearing_deg: float) -> LonLat:
        """Point reached from origin along a great circle. Longitude is kept in [-180, 180]."""
        lon, lat = _finite_point(origin)
        phi1, lmb1 = math.radians(lat), math.radians(lon)
        theta = math.radians(bearing_deg)
        delta = distance_m / EARTH_RADIUS_M

        phi2 = math.asin(
            math.sin(phi1) * math.cos(delta) + math.cos(phi1) * math.sin(delta) * math.cos(theta)
        )
        lmb2 = lmb1 + math.atan2(
            math.sin(theta) * math.sin(delta) * math.cos(phi1),
            math.cos(delta) - math.sin(phi1) * math.sin(phi2),
        )
        return (wrap_longitude(math.degrees(lmb2)), math.degrees(phi2))

    @staticmethod
    def bounding_box(polygon: Polygon) -> BoundingBox:
        return tuple(_shape(_open_ring(polygon)).bounds)

    @staticmethod
    def bounding_box_of_points(points: Iterable[Sequence[float]]) -> BoundingBox:
        coords = [_finite_point(p) for p in points]
        if not coords:
            raise GeometryError("Cannot compute a bounding box of no points")
        lons = [c[0] for c in coords]
        lats = [c[1] for c in coords]
        return (min(lons), min(lats), max(lons), max(lats))

    @staticmethod
    def in_bounding_box(point: LonLat, bbox: BoundingBox) -> bool:
        lon, lat = point
        min_lon, min_lat, max_lon, max_lat = bbox
        return min_lon <= lon <= max_lon and min_lat <= lat <= max_lat

    @staticmethod
    def point_in_polygon(point: LonLat, polygon: Polygon) -> bool:
        """Strict containment. Points on an edge or a vertex count as outside."""
        x, y = _finite_point(point)
        shape = _shape(_open_ring(polygon))
        try:
            return bool(shape.contains(Point(x, y)))
        except GEOSException as exc:
            raise GeometryError(f"Containment test failed: {exc}") from exc

    @staticmethod
    def circle_polygon(center: LonLat, radius_meters: float, segments: int = CIRCLE_SEGMENTS) -> Polygon:
        """Closed ring approximating a geodesic circle.

        Vertex longitudes stay within 180 degrees of the center, so a circle that
        straddles the antimeridian may run past +/-180. Use `wrap_longitude` to
        bring query points into the same frame.
        """
        center_lon, _ = _finite_point(center)
        if not math.isfinite(radius_meters) or radius_meters <= 0:
            raise GeometryError(f"Circle radius must be positive, got {radius_meters!r}")
        if segments < 3:
            raise GeometryError("A circle polygon needs at least 3 segments")

        ring = []
        for i in range(segments):
            lon, lat = GeometryKernel.destination(center, radius_meters, i * 360.0 / segments)
            ring.append((wrap_longitude(lon, center_lon), lat))
        ring.append(ring[0])
        return Polygon(ring=tuple(ring))

    @staticmethod
    def as_polygon(geometry: Geometry) -> Polygon:
        if isinstance(geometry, Polygon):
            return geometry
        if isinstance(geometry, Circle):
            return GeometryKernel.circle_polygon(geometry.center, geometry.radius_meters)
        raise GeometryError(f"Unsupported geometry: {type(geometry).__name__}")

    @staticmethod
    def contains(geometry: Geometry, point: LonLat) -> bool:
        if isinstance(geometry, Circle):
            lon, lat = _finite_point(point)
            point = (wrap_longitude(lon, geometry.center[0]), lat)
        return GeometryKernel.point_in_polygon(point, GeometryKernel.as_polygon(geometry))

    @staticmethod
    def validate_ring(ring: Sequence[Sequence[float]]) -> Tuple[LonLat, ...]:
        """O(n) write-time check of a closed polygon ring.

        Rejects short or open rings, out-of-range coordinates, repeated vertices
        and zero-area rings. Full self-intersection detection is not attempted.
        """
        if len(ring) < 4:
            raise GeometryError(f"Polygon ring needs at least 4 points, got {len(ring)}")
        coords = [_finite_point(p) for p in ring]
        if coords[0] != coords[-1]:
            raise GeometryError("Polygon ring must be closed (first point == last point)")
        for lon, lat in coords:
            if not (-180.0 <= lon <= 180.0 and -90.0 <= lat <= 90.0):
                raise GeometryError(f"Coordinate out of range: ({lon}, {lat})")

        seen = set()
        for vertex in coords[:-1]:
            if vertex in seen:
                raise GeometryError(f"Polygon ring repeats vertex {vertex}")
            seen.add(vertex)

        area2 = 0.0
        for (x1, y1), (x2, y2) in zip(coords, coords[1:]):
            area2 += x1 * y2 - x2 * y1
        if abs(area2) <= _EPSILON:
            raise GeometryError("Polygon ring has zero area")
        return tuple(coords)


def geometry_to_dict(geometry: Geometry) -> dict:
    if isinstance(geometry, Polygon):
        return {"type": "Polygon", "coordinates": [[list(p) for p in geometry.ring]]}
    if isinstance(geometry, Circle):
        return {"type": "Circle", "center": list(geometry.center), "radius": geometry.radius_meters}
    raise GeometryError(f"Unsupported geometry: {type(geometry).__name__}")


def geometry_from_dict(data: dict) -> Geometry:
    if data.get("type") == "Feature":
        data = data.get("geometry") or {}

    kind = data.get("type")
    try:
        if kind == "Polygon":
            rings = data["coordinates"]
            return Polygon(ring=tuple(_finite_point(p) for p in rings[0]))
        if kind == "Circle":
            return Circle(center=_finite_point(data["center"]), radius_meters=float(data["radius"]))
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise GeometryError(f"Malformed {kind} geometry") from exc
    raise GeometryError(f"Unsupported geometry type: {kind!r}")
