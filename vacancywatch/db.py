"""SQLite-backed snapshot and event storage."""

from __future__ import annotations

import datetime as dt
import json
import logging
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from openpyxl import Workbook

from .models import (
    CanonicalUnit,
    DiffResult,
    EventType,
    PropertyRunResult,
    Snapshot,
    UnitChange,
    UnitEvent,
)
from .normalize import unit_number_from_key

logger = logging.getLogger(__name__)

SQLITE_PREFIX = "sqlite://"

DateLike = Union[str, dt.date]

EXPORT_HEADERS = [
    "property_id",
    "snapshot_date",
    "unit_key",
    "unit_number",
    "price",
    "available_on",
    "floor_plan_id",
    "suspect_empty",
]


def resolve_sqlite_path(database_url: str) -> Path:
    """Translate a DATABASE_URL into a filesystem path."""
    if not database_url:
        raise ValueError("DATABASE_URL must not be empty")

    if database_url.startswith(SQLITE_PREFIX):
        raw_path = database_url[len(SQLITE_PREFIX):]
        # Allow sqlite:///path/to/file and sqlite://path/to/file styles.
        if raw_path.startswith("/"):
            raw_path = raw_path[1:]
        path = Path(raw_path)
    else:
        path = Path(database_url)

    if not path.is_absolute():
        path = Path.cwd() / path

    return path.expanduser().resolve()


def as_date_text(value: DateLike) -> str:
    """Return ``value`` as an ISO calendar date, rejecting other formats."""
    if isinstance(value, dt.datetime):
        return value.date().isoformat()
    if isinstance(value, dt.date):
        return value.isoformat()
    return dt.date.fromisoformat(str(value).strip()).isoformat()


def _now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def _units_to_json(units: Sequence[CanonicalUnit]) -> str:
    return json.dumps([unit.to_dict() for unit in units], ensure_ascii=False)


def _row_to_snapshot(row: sqlite3.Row) -> Snapshot:
    units = [CanonicalUnit.from_dict(item) for item in json.loads(row["units_json"] or "[]")]
    return Snapshot(
        property_id=row["property_id"],
        snapshot_date=row["snapshot_date"],
        units=units,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        suspect_empty=bool(row["suspect_empty"]),
    )


@dataclass
class Database:
    """Thin wrapper around sqlite3 for snapshots, events, and run history."""

    path: Path
    timeout: float = 30.0

    def connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        with closing(self.connect()) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS unit_snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    property_id TEXT NOT NULL,
                    snapshot_date TEXT NOT NULL,
                    units_json TEXT NOT NULL,
                    unit_count INTEGER NOT NULL DEFAULT 0,
                    suspect_empty INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(property_id, snapshot_date)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS unit_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    property_id TEXT NOT NULL,
                    event_date TEXT NOT NULL,
                    unit_key TEXT NOT NULL,
                    unit_number TEXT,
                    event_type TEXT NOT NULL,
                    source TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_unit_events_scope
                ON unit_events (property_id, event_date, source)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS unit_changes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    property_id TEXT NOT NULL,
                    change_date TEXT NOT NULL,
                    unit_key TEXT NOT NULL,
                    unit_number TEXT,
                    fields TEXT NOT NULL,
                    before_json TEXT,
                    after_json TEXT,
                    source TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_unit_changes_scope
                ON unit_changes (property_id, change_date, source)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    executed_at TEXT NOT NULL,
                    property_id TEXT NOT NULL,
                    snapshot_date TEXT NOT NULL,
                    source TEXT NOT NULL,
                    status TEXT NOT NULL,
                    stage TEXT,
                    unit_count INTEGER NOT NULL DEFAULT 0,
                    dropped_count INTEGER NOT NULL DEFAULT 0,
                    appeared INTEGER NOT NULL DEFAULT 0,
                    disappeared INTEGER NOT NULL DEFAULT 0,
                    events_written INTEGER NOT NULL DEFAULT 0,
                    notes TEXT
                )
                """
            )

    # Snapshots

    def upsert_snapshot(
        self,
        property_id: str,
        snapshot_date: DateLike,
        units: Sequence[CanonicalUnit],
        suspect_empty: bool = False,
    ) -> Snapshot:
        """Insert or overwrite the single snapshot row for a property and day."""
        day = as_date_text(snapshot_date)
        keys = [unit.unit_key for unit in units]
        if len(set(keys)) != len(keys):
            raise ValueError(f"Snapshot units for {property_id} are not key-unique")

        timestamp = _now()
        with closing(self.connect()) as conn, conn:
            conn.execute(
                """
                INSERT INTO unit_snapshots (
                    property_id, snapshot_date, units_json, unit_count,
                    suspect_empty, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(property_id, snapshot_date) DO UPDATE SET
                    units_json=excluded.units_json,
                    unit_count=excluded.unit_count,
                    suspect_empty=excluded.suspect_empty,
                    updated_at=excluded.updated_at
                """,
                (
                    property_id,
                    day,
                    _units_to_json(units),
                    len(units),
                    int(suspect_empty),
                    timestamp,
                    timestamp,
                ),
            )
            row = conn.execute(
                "SELECT * FROM unit_snapshots WHERE property_id = ? AND snapshot_date = ?",
                (property_id, day),
            ).fetchone()
        return _row_to_snapshot(row)

    def fetch_snapshot(self, property_id: str, snapshot_date: DateLike) -> Optional[Snapshot]:
        with closing(self.connect()) as conn:
            row = conn.execute(
                "SELECT * FROM unit_snapshots WHERE property_id = ? AND snapshot_date = ?",
                (property_id, as_date_text(snapshot_date)),
            ).fetchone()
        return _row_to_snapshot(row) if row else None

    def get_comparison_baseline(
        self,
        property_id: str,
        snapshot_date: DateLike,
    ) -> Optional[Snapshot]:
        """Return the most recent snapshot strictly before ``snapshot_date``."""
        with closing(self.connect()) as conn:
            row = conn.execute(
                """
                SELECT * FROM unit_snapshots
                WHERE property_id = ? AND snapshot_date < ?
                ORDER BY snapshot_date DESC
                LIMIT 1
                """,
                (property_id, as_date_text(snapshot_date)),
            ).fetchone()
        return _row_to_snapshot(row) if row else None

    def latest_snapshot_date(
        self,
        property_id: str,
        on_or_before: Optional[DateLike] = None,
    ) -> Optional[str]:
        query = "SELECT MAX(snapshot_date) FROM unit_snapshots WHERE property_id = ?"
        params: tuple = (property_id,)
        if on_or_before is not None:
            query += " AND snapshot_date <= ?"
            params += (as_date_text(on_or_before),)
        with closing(self.connect()) as conn:
            row = conn.execute(query, params).fetchone()
        return row[0] if row else None

    def snapshot_property_ids(self) -> List[str]:
        with closing(self.connect()) as conn:
            rows = conn.execute(
                "SELECT DISTINCT property_id FROM unit_snapshots ORDER BY property_id"
            ).fetchall()
        return [row[0] for row in rows]

    # Events

    def replace_events(
        self,
        property_id: str,
        event_date: DateLike,
        source: str,
        diff: DiffResult,
        current_units: Iterable[CanonicalUnit] = (),
        previous_units: Iterable[CanonicalUnit] = (),
    ) -> int:
        """Swap the stored events for ``(property_id, event_date, source)``.

        Delete and insert run inside one transaction, so a crash leaves either
        the old rows or the new rows. Returns the number of rows written.
        """
        day = as_date_text(event_date)
        current_numbers = {unit.unit_key: unit.unit_number for unit in current_units}
        previous_numbers = {unit.unit_key: unit.unit_number for unit in previous_units}
        timestamp = _now()

        rows: List[Tuple[str, str, str, Optional[str], str, str, str]] = []
        for unit_key in diff.appeared:
            unit_number = current_numbers.get(unit_key) or unit_number_from_key(unit_key)
            rows.append(
                (property_id, day, unit_key, unit_number, EventType.APPEARED.value, source, timestamp)
            )
        for unit_key in diff.disappeared:
            unit_number = previous_numbers.get(unit_key) or unit_number_from_key(unit_key)
            rows.append(
                (property_id, day, unit_key, unit_number, EventType.DISAPPEARED.value, source, timestamp)
            )

        with closing(self.connect()) as conn, conn:
            conn.execute(
                """
                DELETE FROM unit_events
                WHERE property_id = ? AND event_date = ? AND source = ?
                """,
                (property_id, day, source),
            )
            if rows:
                conn.executemany(
                    """
                    INSERT INTO unit_events (
                        property_id, event_date, unit_key, unit_number,
                        event_type, source, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        return len(rows)

    def fetch_events(
        self,
        property_id: str,
        event_date: Optional[DateLike] = None,
        source: Optional[str] = None,
    ) -> List[UnitEvent]:
        query = """
            SELECT property_id, event_date, unit_key, unit_number, event_type, source
            FROM unit_events
            WHERE property_id = ?
        """
        params: tuple = (property_id,)
        if event_date is not None:
            query += " AND event_date = ?"
            params += (as_date_text(event_date),)
        if source is not None:
            query += " AND source = ?"
            params += (source,)
        query += " ORDER BY event_date, source, event_type, unit_key"

        with closing(self.connect()) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            UnitEvent(
                property_id=row["property_id"],
                event_date=row["event_date"],
                unit_key=row["unit_key"],
                unit_number=row["unit_number"],
                event_type=EventType(row["event_type"]),
                source=row["source"],
            )
            for row in rows
        ]

    # Field changes

    def replace_changes(
        self,
        property_id: str,
        change_date: DateLike,
        source: str,
        changes: Sequence[UnitChange],
    ) -> int:
        day = as_date_text(change_date)
        timestamp = _now()
        rows = [
            (
                property_id,
                day,
                change.unit_key,
                change.unit_number,
                ",".join(change.fields),
                json.dumps(change.before, ensure_ascii=False),
                json.dumps(change.after, ensure_ascii=False),
                source,
                timestamp,
            )
            for change in changes
        ]
        with closing(self.connect()) as conn, conn:
            conn.execute(
                """
                DELETE FROM unit_changes
                WHERE property_id = ? AND change_date = ? AND source = ?
                """,
                (property_id, day, source),
            )
            if rows:
                conn.executemany(
                    """
                    INSERT INTO unit_changes (
                        property_id, change_date, unit_key, unit_number, fields,
                        before_json, after_json, source, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        return len(rows)

    def fetch_changes(
        self,
        property_id: str,
        change_date: DateLike,
        source: Optional[str] = None,
    ) -> List[UnitChange]:
        query = """
            SELECT unit_key, unit_number, fields, before_json, after_json
            FROM unit_changes
            WHERE property_id = ? AND change_date = ?
        """
        params: tuple = (property_id, as_date_text(change_date))
        if source is not None:
            query += " AND source = ?"
            params += (source,)
        query += " ORDER BY unit_key"

        with closing(self.connect()) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            UnitChange(
                unit_key=row["unit_key"],
                unit_number=row["unit_number"],
                fields=tuple(row["fields"].split(",")),
                before=json.loads(row["before_json"] or "{}"),
                after=json.loads(row["after_json"] or "{}"),
            )
            for row in rows
        ]

    # Run history

    def add_run(
        self,
        executed_at: str,
        snapshot_date: DateLike,
        source: str,
        result: PropertyRunResult,
    ) -> None:
        with closing(self.connect()) as conn, conn:
            conn.execute(
                """
                INSERT INTO runs (
                    executed_at, property_id, snapshot_date, source, status, stage,
                    unit_count, dropped_count, appeared, disappeared, events_written, notes
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    executed_at,
                    result.property_id,
                    as_date_text(snapshot_date),
                    source,
                    result.status.value,
                    result.stage.value,
                    result.unit_count,
                    result.dropped_count,
                    len(result.appeared),
                    len(result.disappeared),
                    result.events_written,
                    result.reason,
                ),
            )

    def recent_runs(self, limit: int = 10) -> List[Dict[str, object]]:
        with closing(self.connect()) as conn:
            rows = conn.execute(
                """
                SELECT executed_at, property_id, snapshot_date, source, status, stage,
                       unit_count, dropped_count, appeared, disappeared, events_written, notes
                FROM runs ORDER BY id DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [dict(row) for row in rows]

    # Export

    def export_snapshot_to_xlsx(
        self,
        path: Path,
        snapshot_date: Optional[DateLike] = None,
        property_id: Optional[str] = None,
    ) -> int:
        """Write snapshot inventory rows to an xlsx workbook.

        Without ``snapshot_date`` the latest snapshot of each property is used.
        Returns the number of unit rows written.
        """
        conditions = []
        params: tuple = ()
        if snapshot_date is not None:
            conditions.append("s.snapshot_date = ?")
            params += (as_date_text(snapshot_date),)
        else:
            conditions.append(
                """
                s.snapshot_date = (
                    SELECT MAX(latest.snapshot_date) FROM unit_snapshots AS latest
                    WHERE latest.property_id = s.property_id
                )
                """
            )
        if property_id:
            conditions.append("s.property_id = ?")
            params += (property_id,)

        query = "SELECT s.* FROM unit_snapshots AS s WHERE " + " AND ".join(conditions)
        query += " ORDER BY s.property_id, s.snapshot_date"

        with closing(self.connect()) as conn:
            snapshots = [_row_to_snapshot(row) for row in conn.execute(query, params)]

        workbook = Workbook()
        worksheet = workbook.active
        worksheet.title = "snapshots"
        worksheet.append(EXPORT_HEADERS)

        written = 0
        for snapshot in snapshots:
            for unit in snapshot.units:
                worksheet.append(
                    [
                        snapshot.property_id,
                        snapshot.snapshot_date,
                        unit.unit_key,
                        unit.unit_number,
                        unit.price,
                        unit.available_on,
                        unit.floor_plan_id,
                        snapshot.suspect_empty,
                    ]
                )
                written += 1

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(path)
        logger.debug("Exported %d unit rows to %s", written, path)
        return written
