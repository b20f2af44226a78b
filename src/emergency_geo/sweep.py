from __future__ import annotations

from typing import Iterable, Optional
from uuid import uuid4

from emergency_geo.geometry import GeometryKernel, wrap_longitude
from emergency_geo.models import Entity, GeoSweep, LonLat, SweepResult


def create_sweep(
    center: LonLat,
    radius_meters: float,
    color: str = "#ff0000",
    label: Optional[str] = None,
) -> GeoSweep:
    # Raises GeometryError for a bad center or radius.
    GeometryKernel.circle_polygon(center, radius_meters)
    return GeoSweep(
        id=f"sweep-{uuid4().hex}",
        center=(float(center[0]), float(center[1])),
        radius_meters=radius_meters,
        color=color,
        label=label or f"Sweep {radius_meters:g}m",
    )


class SweepAnalyzer:
    """Counts entities inside an ad-hoc circle with a bbox pre-filter and exact containment."""

    def __init__(self, kernel: GeometryKernel | None = None) -> None:
        self.kernel = kernel or GeometryKernel()

    def analyze(self, center: LonLat, radius_meters: float, candidates: Iterable[Entity]) -> SweepResult:
        circle = self.kernel.circle_polygon(center, radius_meters)
        bbox = self.kernel.bounding_box(circle)

        matched = []
        for c in candidates:
            lon, lat = c.lon_lat
            point = (wrap_longitude(lon, center[0]), lat)
            if self.kernel.in_bounding_box(point, bbox) and self.kernel.point_in_polygon(point, circle):
                matched.append(c)
        return SweepResult(matched=tuple(matched), count=len(matched))

    def analyze_sweep(self, sweep: GeoSweep, candidates: Iterable[Entity]) -> SweepResult:
        return self.analyze(sweep.center, sweep.radius_meters, candidates)
