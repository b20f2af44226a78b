from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from emergency_geo.geometry import geometry_from_dict, geometry_to_dict
from emergency_geo.models import Zone, ZoneDraft, utc_now


def now_iso() -> str:
    return utc_now().isoformat()


def _row_to_zone(row: sqlite3.Row) -> Zone:
    return Zone(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        geometry=geometry_from_dict(json.loads(row["geometry"])),
        color=row["color"],
        opacity=float(row["opacity"]),
        created_by=row["created_by"],
        is_active=bool(row["is_active"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


class SqliteZoneBackend:
    """Durable zone store on sqlite3, keyed by id with a secondary filter on is_active."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.init_db()

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS zones (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    geometry TEXT NOT NULL,
                    color TEXT NOT NULL,
                    opacity REAL NOT NULL,
                    created_by TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_zones_active ON zones (is_active)")

    @contextmanager
    def get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def list_zones(self, active_only: bool = True) -> List[Zone]:
        query = "SELECT * FROM zones"
        if active_only:
            query += " WHERE is_active=1"
        query += " ORDER BY created_at DESC, rowid DESC"
        with self.get_conn() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_zone(r) for r in rows]

    def get_zone(self, zone_id: str) -> Optional[Zone]:
        with self.get_conn() as conn:
            row = conn.execute("SELECT * FROM zones WHERE id=?", (zone_id,)).fetchone()
        return _row_to_zone(row) if row else None

    def insert_zone(self, draft: ZoneDraft) -> Zone:
        zone_id = uuid4().hex
        stamp = now_iso()
        with self.get_conn() as conn:
            conn.execute(
                """
                INSERT INTO zones (id,name,description,geometry,color,opacity,created_by,is_active,created_at,updated_at)
                VALUES (?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    zone_id,
                    draft.name,
                    draft.description,
                    json.dumps(geometry_to_dict(draft.geometry)),
                    draft.color,
                    draft.opacity,
                    draft.created_by,
                    int(draft.is_active),
                    stamp,
                    stamp,
                ),
            )
            row = conn.execute("SELECT * FROM zones WHERE id=?", (zone_id,)).fetchone()
        return _row_to_zone(row)

    def update_zone(self, zone_id: str, fields: dict) -> Optional[Zone]:
        values = {k: int(v) if k == "is_active" else v for k, v in fields.items()}
        values["updated_at"] = now_iso()
        assignments = ",".join(f"{column}=?" for column in values)
        with self.get_conn() as conn:
            cur = conn.execute(
                f"UPDATE zones SET {assignments} WHERE id=?",
                (*values.values(), zone_id),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM zones WHERE id=?", (zone_id,)).fetchone()
        return _row_to_zone(row)

    def delete_zone(self, zone_id: str) -> bool:
        with self.get_conn() as conn:
            deleted = conn.execute("DELETE FROM zones WHERE id=?", (zone_id,)).rowcount
        return deleted > 0
