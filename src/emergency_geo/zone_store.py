from __future__ import annotations

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, List, Optional, Protocol, Tuple

from emergency_geo.errors import GeometryError, NotFoundError, ValidationError
from emergency_geo.geometry import GeometryKernel
from emergency_geo.models import Circle, Polygon, Zone, ZoneChange, ZoneDraft

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"name", "description", "color", "opacity", "is_active"}
REQUIRED_FIELDS = {"name", "color", "opacity", "is_active"}


class ZoneBackend(Protocol):
    def list_zones(self, active_only: bool = True) -> List[Zone]: ...

    def get_zone(self, zone_id: str) -> Optional[Zone]: ...

    def insert_zone(self, draft: ZoneDraft) -> Zone: ...

    def update_zone(self, zone_id: str, fields: dict) -> Optional[Zone]: ...

    def delete_zone(self, zone_id: str) -> bool: ...


def _validate_opacity(opacity) -> None:
    if isinstance(opacity, bool) or not isinstance(opacity, (int, float)) or not 0.0 <= opacity <= 1.0:
        raise ValidationError(f"opacity must be between 0 and 1, got {opacity!r}")


def validate_draft(draft: ZoneDraft) -> None:
    if not draft.name or not draft.name.strip():
        raise ValidationError("Zone name is required")
    if not draft.created_by:
        raise ValidationError("Zone creator is required")
    _validate_opacity(draft.opacity)

    geometry = draft.geometry
    try:
        if isinstance(geometry, Polygon):
            GeometryKernel.validate_ring(geometry.ring)
        elif isinstance(geometry, Circle):
            GeometryKernel.circle_polygon(geometry.center, geometry.radius_meters)
        else:
            raise GeometryError(f"Unsupported geometry: {type(geometry).__name__}")
    except GeometryError as exc:
        raise ValidationError(f"Invalid zone geometry: {exc}") from exc


def validate_update(fields: dict) -> None:
    if not fields:
        raise ValidationError("No fields to update")
    if "geometry" in fields:
        raise ValidationError("Zone geometry cannot be changed after creation")
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
    for key in REQUIRED_FIELDS & set(fields):
        if fields[key] is None:
            raise ValidationError(f"Zone {key} cannot be null")
    if "name" in fields and not str(fields["name"]).strip():
        raise ValidationError("Zone name is required")
    if "color" in fields and not isinstance(fields["color"], str):
        raise ValidationError(f"color must be a string, got {fields['color']!r}")
    if "is_active" in fields and not isinstance(fields["is_active"], bool):
        raise ValidationError(f"is_active must be a boolean, got {fields['is_active']!r}")
    if "opacity" in fields:
        _validate_opacity(fields["opacity"])


class ZoneStore:
    """CRUD over zones with write-time validation and per-zone write serialization.

    The in-memory zone list is an immutable snapshot that is only replaced once the
    backend has confirmed a write, or when a change notification is applied.
    """

    def __init__(self, backend: ZoneBackend) -> None:
        self.backend = backend
        self._zones: Tuple[Zone, ...] = ()
        self._snapshot_lock = threading.Lock()
        self._registry_lock = threading.Lock()
        self._zone_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

    @property
    def zones(self) -> Tuple[Zone, ...]:
        return self._zones

    @contextmanager
    def _zone_lock(self, zone_id: str):
        with self._registry_lock:
            lock = self._zone_locks[zone_id]
        with lock:
            yield

    def _replace_snapshot(self, zones) -> None:
        with self._snapshot_lock:
            self._zones = tuple(zones)

    def list(self, active_only: bool = True) -> List[Zone]:
        zones = self.backend.list_zones(active_only=active_only)
        if active_only:
            self._replace_snapshot(zones)
        return zones

    def get(self, zone_id: str) -> Zone:
        zone = self.backend.get_zone(zone_id)
        if zone is None:
            raise NotFoundError(zone_id)
        return zone

    def create(self, draft: ZoneDraft) -> Zone:
        validate_draft(draft)
        zone = self.backend.insert_zone(draft)
        logger.info("Created zone %s (%s)", zone.id, zone.name)
        self.apply_change(ZoneChange(op="insert", zone=zone))
        return zone

    def update(self, zone_id: str, fields: dict) -> Zone:
        validate_update(fields)
        with self._zone_lock(zone_id):
            zone = self.backend.update_zone(zone_id, dict(fields))
            if zone is None:
                raise NotFoundError(zone_id)
        logger.info("Updated zone %s fields=%s", zone_id, sorted(fields))
        self.apply_change(ZoneChange(op="update", zone=zone))
        return zone

    def deactivate(self, zone_id: str) -> Zone:
        return self.update(zone_id, {"is_active": False})

    def delete(self, zone_id: str) -> None:
        with self._zone_lock(zone_id):
            zone = self.backend.get_zone(zone_id)
            if zone is None or not self.backend.delete_zone(zone_id):
                raise NotFoundError(zone_id)
        with self._registry_lock:
            self._zone_locks.pop(zone_id, None)
        logger.info("Deleted zone %s", zone_id)
        self.apply_change(ZoneChange(op="delete", zone=zone))

    def apply_change(self, change: ZoneChange) -> Tuple[Zone, ...]:
        """Fold a store change notification into the active-zone snapshot."""
        with self._snapshot_lock:
            remaining = [z for z in self._zones if z.id != change.zone.id]
            if change.op in {"insert", "update"}:
                if change.zone.is_active:
                    remaining.append(change.zone)
                    remaining.sort(key=lambda z: z.created_at, reverse=True)
            elif change.op != "delete":
                raise ValidationError(f"Unknown zone change op: {change.op!r}")
            self._zones = tuple(remaining)
            return self._zones
