from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Optional

from beacon.domain.models import (
    AccessStat,
    AttemptRecord,
    BackupRecord,
    CapabilityReport,
    FileConflict,
    FileFingerprint,
    ManualConfigSuggestion,
    RouteMapping,
    now_ts,
)
from beacon.store.base import HISTORY_LIMIT


class BeaconSQLiteStore:
    """Site-local SQLite store.

    Records are kept as JSON documents next to the few columns we query on;
    the pydantic models own the shape.
    """

    SCHEMA_VERSION = "1.0"

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ----------------------------
    # Connection / schema
    # ----------------------------

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(str(self.db_path))
        con.row_factory = sqlite3.Row
        return con

    def _init_db(self) -> None:
        with self._connect() as con:
            con.execute("PRAGMA journal_mode=WAL;")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS capability_reports (
                    path TEXT PRIMARY KEY,
                    doc TEXT NOT NULL,
                    generated_at INTEGER NOT NULL
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS attempts (
                    endpoint_key TEXT PRIMARY KEY,
                    doc TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS attempt_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    endpoint_key TEXT NOT NULL,
                    doc TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                );
                """
            )
            con.execute(
                "CREATE INDEX IF NOT EXISTS idx_history_key ON attempt_history(endpoint_key, id);"
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS fingerprints (
                    path TEXT PRIMARY KEY,
                    content_hash TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS conflicts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    path TEXT NOT NULL,
                    proposed_content TEXT NOT NULL,
                    existing_content TEXT NOT NULL,
                    status TEXT NOT NULL,
                    detected_at INTEGER NOT NULL,
                    resolution TEXT
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS backups (
                    backup_path TEXT PRIMARY KEY,
                    original_path TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS suggestions (
                    endpoint_key TEXT PRIMARY KEY,
                    doc TEXT NOT NULL
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS routes (
                    path TEXT PRIMARY KEY,
                    doc TEXT NOT NULL
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS access_stats (
                    endpoint_key TEXT PRIMARY KEY,
                    hits INTEGER NOT NULL,
                    last_access INTEGER
                );
                """
            )

            if self._get_meta(con, "schema_version") is None:
                self._set_meta(con, "schema_version", self.SCHEMA_VERSION)

    # ----------------------------
    # Capability reports
    # ----------------------------

    def get_capability_report(self, path: str) -> Optional[CapabilityReport]:
        with self._connect() as con:
            row = con.execute("SELECT doc FROM capability_reports WHERE path=?", (path,)).fetchone()
            if not row:
                return None
            return CapabilityReport.model_validate_json(row["doc"])

    def save_capability_report(self, path: str, report: CapabilityReport) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO capability_reports(path, doc, generated_at) VALUES(?,?,?)
                ON CONFLICT(path) DO UPDATE SET
                    doc=excluded.doc,
                    generated_at=excluded.generated_at;
                """,
                (path, report.model_dump_json(), report.generated_at),
            )

    def clear_capability_reports(self, path: Optional[str] = None) -> int:
        with self._connect() as con:
            if path is None:
                cur = con.execute("DELETE FROM capability_reports")
            else:
                cur = con.execute("DELETE FROM capability_reports WHERE path=?", (path,))
            return cur.rowcount

    # ----------------------------
    # Attempts
    # ----------------------------

    def get_attempt(self, endpoint_key: str) -> Optional[AttemptRecord]:
        with self._connect() as con:
            row = con.execute(
                "SELECT doc FROM attempts WHERE endpoint_key=?", (endpoint_key,)
            ).fetchone()
            if not row:
                return None
            return AttemptRecord.model_validate_json(row["doc"])

    def save_attempt(self, record: AttemptRecord) -> None:
        doc = record.model_dump_json()
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO attempts(endpoint_key, doc, updated_at) VALUES(?,?,?)
                ON CONFLICT(endpoint_key) DO UPDATE SET
                    doc=excluded.doc,
                    updated_at=excluded.updated_at;
                """,
                (record.endpoint_key, doc, record.timestamp),
            )
            con.execute(
                "INSERT INTO attempt_history(endpoint_key, doc, created_at) VALUES(?,?,?)",
                (record.endpoint_key, doc, record.timestamp),
            )
            # keep only the newest entries per endpoint
            con.execute(
                """
                DELETE FROM attempt_history
                WHERE endpoint_key=? AND id NOT IN (
                    SELECT id FROM attempt_history WHERE endpoint_key=?
                    ORDER BY id DESC LIMIT ?
                )
                """,
                (record.endpoint_key, record.endpoint_key, HISTORY_LIMIT),
            )

    def delete_attempt(self, endpoint_key: str) -> None:
        with self._connect() as con:
            con.execute("DELETE FROM attempts WHERE endpoint_key=?", (endpoint_key,))

    def list_attempts(self) -> list[AttemptRecord]:
        with self._connect() as con:
            rows = con.execute("SELECT doc FROM attempts ORDER BY endpoint_key").fetchall()
            return [AttemptRecord.model_validate_json(r["doc"]) for r in rows]

    def list_history(self, endpoint_key: str, limit: int = HISTORY_LIMIT) -> list[AttemptRecord]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT doc FROM attempt_history WHERE endpoint_key=? ORDER BY id DESC LIMIT ?",
                (endpoint_key, int(limit)),
            ).fetchall()
            return [AttemptRecord.model_validate_json(r["doc"]) for r in rows]

    # ----------------------------
    # Fingerprints
    # ----------------------------

    def get_fingerprint(self, path: str) -> Optional[FileFingerprint]:
        with self._connect() as con:
            row = con.execute(
                "SELECT path, content_hash, created_at, updated_at FROM fingerprints WHERE path=?",
                (path,),
            ).fetchone()
            if not row:
                return None
            return FileFingerprint(**dict(row))

    def save_fingerprint(self, fingerprint: FileFingerprint) -> None:
        with self._connect() as con:
            # created_at survives updates
            con.execute(
                """
                INSERT INTO fingerprints(path, content_hash, created_at, updated_at)
                VALUES(?,?,?,?)
                ON CONFLICT(path) DO UPDATE SET
                    content_hash=excluded.content_hash,
                    updated_at=excluded.updated_at;
                """,
                (
                    fingerprint.path,
                    fingerprint.content_hash,
                    fingerprint.created_at,
                    fingerprint.updated_at,
                ),
            )

    def delete_fingerprint(self, path: str) -> None:
        with self._connect() as con:
            con.execute("DELETE FROM fingerprints WHERE path=?", (path,))

    def list_fingerprints(self) -> list[FileFingerprint]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT path, content_hash, created_at, updated_at FROM fingerprints ORDER BY path"
            ).fetchall()
            return [FileFingerprint(**dict(r)) for r in rows]

    # ----------------------------
    # Conflicts
    # ----------------------------

    def add_conflict(self, conflict: FileConflict) -> int:
        with self._connect() as con:
            cur = con.execute(
                """
                INSERT INTO conflicts(path, proposed_content, existing_content, status, detected_at, resolution)
                VALUES(?,?,?,?,?,?)
                """,
                (
                    conflict.path,
                    conflict.proposed_content,
                    conflict.existing_content,
                    conflict.status,
                    conflict.detected_at,
                    conflict.resolution,
                ),
            )
            return int(cur.lastrowid)

    def get_conflict(self, conflict_id: int) -> Optional[FileConflict]:
        with self._connect() as con:
            row = con.execute("SELECT * FROM conflicts WHERE id=?", (conflict_id,)).fetchone()
            return FileConflict(**dict(row)) if row else None

    def list_conflicts(self, status: Optional[str] = None) -> list[FileConflict]:
        q = "SELECT * FROM conflicts"
        params: list[object] = []
        if status:
            q += " WHERE status = ?"
            params.append(status)
        q += " ORDER BY id"
        with self._connect() as con:
            rows = con.execute(q, tuple(params)).fetchall()
            return [FileConflict(**dict(r)) for r in rows]

    def update_conflict_existing(self, conflict_id: int, existing_content: str) -> None:
        with self._connect() as con:
            con.execute(
                "UPDATE conflicts SET existing_content=? WHERE id=?",
                (existing_content, conflict_id),
            )

    def resolve_conflict(self, conflict_id: int, resolution: str) -> None:
        with self._connect() as con:
            con.execute(
                "UPDATE conflicts SET status='resolved', resolution=? WHERE id=?",
                (resolution, conflict_id),
            )

    # ----------------------------
    # Backups
    # ----------------------------

    def add_backup(self, record: BackupRecord) -> None:
        with self._connect() as con:
            con.execute(
                "INSERT OR REPLACE INTO backups(backup_path, original_path, created_at) VALUES(?,?,?)",
                (record.backup_path, record.original_path, record.created_at),
            )

    def list_backups(self, original_path: Optional[str] = None) -> list[BackupRecord]:
        q = "SELECT backup_path, original_path, created_at FROM backups"
        params: list[object] = []
        if original_path:
            q += " WHERE original_path = ?"
            params.append(original_path)
        q += " ORDER BY created_at, backup_path"
        with self._connect() as con:
            rows = con.execute(q, tuple(params)).fetchall()
            return [BackupRecord(**dict(r)) for r in rows]

    # ----------------------------
    # Suggestions
    # ----------------------------

    def save_suggestion(self, suggestion: ManualConfigSuggestion) -> None:
        with self._connect() as con:
            con.execute(
                "INSERT OR REPLACE INTO suggestions(endpoint_key, doc) VALUES(?,?)",
                (suggestion.endpoint_key, suggestion.model_dump_json()),
            )

    def get_suggestion(self, endpoint_key: str) -> Optional[ManualConfigSuggestion]:
        with self._connect() as con:
            row = con.execute(
                "SELECT doc FROM suggestions WHERE endpoint_key=?", (endpoint_key,)
            ).fetchone()
            return ManualConfigSuggestion.model_validate_json(row["doc"]) if row else None

    def delete_suggestion(self, endpoint_key: str) -> None:
        with self._connect() as con:
            con.execute("DELETE FROM suggestions WHERE endpoint_key=?", (endpoint_key,))

    def list_suggestions(self) -> list[ManualConfigSuggestion]:
        with self._connect() as con:
            rows = con.execute("SELECT doc FROM suggestions ORDER BY endpoint_key").fetchall()
            return [ManualConfigSuggestion.model_validate_json(r["doc"]) for r in rows]

    # ----------------------------
    # Routes
    # ----------------------------

    def save_route(self, mapping: RouteMapping) -> None:
        with self._connect() as con:
            con.execute(
                "INSERT OR REPLACE INTO routes(path, doc) VALUES(?,?)",
                (mapping.path, mapping.model_dump_json()),
            )

    def delete_route(self, path: str) -> None:
        with self._connect() as con:
            con.execute("DELETE FROM routes WHERE path=?", (path,))

    def list_routes(self) -> list[RouteMapping]:
        with self._connect() as con:
            rows = con.execute("SELECT doc FROM routes ORDER BY path").fetchall()
            return [RouteMapping.model_validate_json(r["doc"]) for r in rows]

    def get_routes_version(self) -> int:
        with self._connect() as con:
            value = self._get_meta(con, "routes_version")
            return int(value) if value is not None else 0

    def bump_routes_version(self) -> int:
        with self._connect() as con:
            value = self._get_meta(con, "routes_version")
            version = (int(value) if value is not None else 0) + 1
            self._set_meta(con, "routes_version", str(version))
            return version

    # ----------------------------
    # Access stats
    # ----------------------------

    def record_access(self, endpoint_key: str) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO access_stats(endpoint_key, hits, last_access) VALUES(?, 1, ?)
                ON CONFLICT(endpoint_key) DO UPDATE SET
                    hits=access_stats.hits + 1,
                    last_access=excluded.last_access;
                """,
                (endpoint_key, now_ts()),
            )

    def list_access_stats(self) -> list[AccessStat]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT endpoint_key, hits, last_access FROM access_stats ORDER BY endpoint_key"
            ).fetchall()
            return [AccessStat(**dict(r)) for r in rows]

    # ----------------------------
    # internal helpers
    # ----------------------------

    def _get_meta(self, con: sqlite3.Connection, key: str) -> Optional[str]:
        row = con.execute("SELECT value FROM meta WHERE key=?", (key,)).fetchone()
        return row[0] if row else None

    def _set_meta(self, con: sqlite3.Connection, key: str, value: str) -> None:
        con.execute(
            """
            INSERT INTO meta(key, value) VALUES(?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value
            """,
            (key, value),
        )
