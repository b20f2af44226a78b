from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from emergency_geo import errors
from emergency_geo.config import DB_PATH, DEFAULT_SWEEP_RADIUS_METERS, SWEEP_COLORS, configure_logging
from emergency_geo.db import SqliteZoneBackend
from emergency_geo.geometry import geometry_from_dict, geometry_to_dict
from emergency_geo.isochrone import IsochroneAdapter
from emergency_geo.models import Cluster, EmergencyZoneStats, Entity, GeoSweep, IsochroneZone, Zone, ZoneDraft
from emergency_geo.system import EmergencyMapSystem
from emergency_geo.zone_store import ZoneStore

logger = logging.getLogger(__name__)


class ZoneIn(BaseModel):
    name: str
    geometry: dict
    color: str = "#ff0000"
    opacity: float = 0.3
    created_by: str
    description: Optional[str] = None
    is_active: bool = True


class ZonePatch(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    opacity: Optional[float] = None
    is_active: Optional[bool] = None


class EntityIn(BaseModel):
    id: str
    type: str
    latitude: float
    longitude: float
    status: str
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class EntitySnapshot(BaseModel):
    entities: List[EntityIn] = Field(default_factory=list)


class SweepIn(BaseModel):
    longitude: float
    latitude: float
    radius_meters: float = DEFAULT_SWEEP_RADIUS_METERS
    color: str = SWEEP_COLORS["danger"]
    label: Optional[str] = None


def zone_to_dict(zone: Zone) -> dict:
    return {
        "id": zone.id,
        "name": zone.name,
        "description": zone.description,
        "geometry": geometry_to_dict(zone.geometry),
        "color": zone.color,
        "opacity": zone.opacity,
        "created_by": zone.created_by,
        "is_active": zone.is_active,
        "created_at": zone.created_at.isoformat(),
        "updated_at": zone.updated_at.isoformat(),
    }


def entity_to_dict(entity: Entity) -> dict:
    return {
        "id": entity.id,
        "type": entity.type,
        "latitude": entity.latitude,
        "longitude": entity.longitude,
        "status": entity.status,
    }


def cluster_to_dict(cluster: Cluster) -> dict:
    return {
        "id": cluster.id,
        "centroid": list(cluster.centroid),
        "member_count": cluster.member_count,
        "dominant_type": cluster.dominant_type,
        "color": cluster.color,
        "members": [entity_to_dict(e) for e in cluster.members],
    }


def sweep_to_dict(sweep: GeoSweep) -> dict:
    return {
        "id": sweep.id,
        "center": list(sweep.center),
        "radius_meters": sweep.radius_meters,
        "color": sweep.color,
        "label": sweep.label,
        "responders_count": sweep.responders_count,
    }


def stats_to_dict(stats: EmergencyZoneStats) -> dict:
    return {
        "zone_id": stats.zone_id,
        "zone_name": stats.zone_name,
        "active_incident_count": stats.active_incident_count,
        "available_helper_count": stats.available_helper_count,
        "assigned_responder_count": stats.assigned_responder_count,
        "average_response_time_minutes": stats.average_response_time_minutes,
        "computed_at": stats.computed_at.isoformat(),
    }


def isochrone_to_dict(zone: IsochroneZone) -> dict:
    return {
        "id": zone.id,
        "center": list(zone.center),
        "time_bands_minutes": list(zone.time_bands_minutes),
        "colors": list(zone.colors),
        "geometry": [geometry_to_dict(p) for p in zone.geometry],
    }


def build_default_system(db_path: Path = DB_PATH) -> EmergencyMapSystem:
    return EmergencyMapSystem(
        zone_store=ZoneStore(SqliteZoneBackend(db_path)),
        routing=IsochroneAdapter(),
    )


def _error_response(status_code: int):
    async def handler(request: Request, exc: errors.GeoEngineError) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handler


def create_app(system: Optional[EmergencyMapSystem] = None) -> FastAPI:
    system = system or build_default_system()
    app = FastAPI(title="Emergency Geo Engine")
    app.state.system = system
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(errors.NotFoundError, _error_response(404))
    app.add_exception_handler(errors.ValidationError, _error_response(422))
    app.add_exception_handler(errors.GeometryError, _error_response(422))
    app.add_exception_handler(errors.RoutingError, _error_response(502))

    @app.get("/health")
    def health():
        return {"status": "ok", "session_version": system.session.version}

    @app.get("/zones")
    def list_zones(active_only: bool = True):
        if active_only:
            zones = system.load_zones()
        else:
            zones = system.zone_store.list(active_only=False)
        return [zone_to_dict(z) for z in zones]

    @app.post("/zones", status_code=201)
    def create_zone(payload: ZoneIn):
        draft = ZoneDraft(
            name=payload.name,
            geometry=geometry_from_dict(payload.geometry),
            color=payload.color,
            opacity=payload.opacity,
            created_by=payload.created_by,
            description=payload.description,
            is_active=payload.is_active,
        )
        return zone_to_dict(system.create_zone(draft))

    @app.patch("/zones/{zone_id}")
    def update_zone(zone_id: str, payload: ZonePatch):
        return zone_to_dict(system.update_zone(zone_id, payload.model_dump(exclude_unset=True)))

    @app.delete("/zones/{zone_id}")
    def delete_zone(zone_id: str):
        system.delete_zone(zone_id)
        return {"ok": True, "zone_id": zone_id}

    @app.get("/zones/{zone_id}/stats")
    def zone_stats(zone_id: str):
        return stats_to_dict(system.zone_stats(zone_id))

    @app.put("/entities")
    def replace_entities(payload: EntitySnapshot):
        entities = [Entity(**e.model_dump()) for e in payload.entities]
        system.ingest_entities(entities)
        return {"ok": True, "count": len(entities), "session_version": system.session.version}

    @app.post("/sweeps")
    def create_sweep(payload: SweepIn):
        sweep, result = system.sweep(
            (payload.longitude, payload.latitude),
            payload.radius_meters,
            color=payload.color,
            label=payload.label,
        )
        return {
            "sweep": sweep_to_dict(sweep),
            "count": result.count,
            "responders": [entity_to_dict(e) for e in result.matched],
        }

    @app.get("/clusters")
    def clusters(refresh: bool = False):
        if refresh:
            system.flush()
        return [cluster_to_dict(c) for c in system.session.clusters]

    @app.get("/isochrones")
    async def isochrones(longitude: float, latitude: float, bands: str = "5,10"):
        try:
            time_bands = [int(b) for b in bands.split(",") if b.strip()]
        except ValueError as exc:
            raise errors.ValidationError(f"Invalid bands: {bands!r}") from exc
        return isochrone_to_dict(await system.isochrones((longitude, latitude), time_bands))

    @app.on_event("shutdown")
    async def shutdown() -> None:
        system.shutdown()
        if system.routing is not None:
            await system.routing.close()

    return app


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    configure_logging()
    logger.info("Emergency geo engine running on http://%s:%s", host, port)
    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    run()
