from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Mapping
from uuid import uuid4

from emergency_geo.geometry import GeometryKernel
from emergency_geo.models import MIXED, Cluster, ClusteringConfig, Entity, LonLat


@dataclass
class _OpenCluster:
    seed: LonLat
    dominant_type: str
    color: str
    members: List[Entity] = field(default_factory=list)

    def freeze(self) -> Cluster:
        return Cluster(
            id=f"cluster-{uuid4().hex}",
            centroid=self.seed,
            member_count=len(self.members),
            dominant_type=self.dominant_type,
            color=self.color,
            members=tuple(self.members),
        )


class ClusteringEngine:
    """Greedy single-pass proximity clustering.

    Each point joins the earliest-created cluster whose seed is within the radius,
    otherwise it seeds a new one. Results depend on input order and there is no
    spatial index: the whole point set is reclustered on every change. A cluster
    that ever receives two different types stays ``mixed`` for the rest of the run.
    Single-member clusters are dropped; they render as plain markers.
    """

    def __init__(self, kernel: GeometryKernel | None = None) -> None:
        self.kernel = kernel or GeometryKernel()

    def cluster(
        self,
        points: Iterable[Entity],
        radius_meters: float,
        type_colors: Mapping[str, str],
        mixed_color: str,
    ) -> List[Cluster]:
        open_clusters: List[_OpenCluster] = []

        for point in points:
            position = point.lon_lat
            for candidate in open_clusters:
                if self.kernel.distance_meters(candidate.seed, position) <= radius_meters:
                    candidate.members.append(point)
                    if candidate.dominant_type != MIXED and candidate.dominant_type != point.type:
                        candidate.dominant_type = MIXED
                        candidate.color = mixed_color
                    break
            else:
                open_clusters.append(
                    _OpenCluster(
                        seed=position,
                        dominant_type=point.type,
                        color=type_colors.get(point.type, mixed_color),
                        members=[point],
                    )
                )

        return [c.freeze() for c in open_clusters if len(c.members) > 1]

    def cluster_with_config(self, points: Iterable[Entity], config: ClusteringConfig) -> List[Cluster]:
        if not config.enabled:
            return []
        return self.cluster(points, config.radius_meters, config.type_colors, config.mixed_color)
