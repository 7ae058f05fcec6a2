from __future__ import annotations

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


class InMemoryStore:
    """Dict-backed StateStore for tests and throwaway runs."""

    def __init__(self) -> None:
        self.reports: dict[str, CapabilityReport] = {}
        self.attempts: dict[str, AttemptRecord] = {}
        self.history: dict[str, list[AttemptRecord]] = {}
        self.fingerprints: dict[str, FileFingerprint] = {}
        self.conflicts: dict[int, FileConflict] = {}
        self.backups: list[BackupRecord] = []
        self.suggestions: dict[str, ManualConfigSuggestion] = {}
        self.routes: dict[str, RouteMapping] = {}
        self.routes_version = 0
        self.access: dict[str, AccessStat] = {}
        self._next_conflict_id = 1

    def get_capability_report(self, path: str) -> Optional[CapabilityReport]:
        report = self.reports.get(path)
        return report.model_copy(deep=True) if report else None

    def save_capability_report(self, path: str, report: CapabilityReport) -> None:
        self.reports[path] = report.model_copy(deep=True)

    def clear_capability_reports(self, path: Optional[str] = None) -> int:
        if path is None:
            n = len(self.reports)
            self.reports.clear()
            return n
        return 1 if self.reports.pop(path, None) is not None else 0

    def get_attempt(self, endpoint_key: str) -> Optional[AttemptRecord]:
        record = self.attempts.get(endpoint_key)
        return record.model_copy(deep=True) if record else None

    def save_attempt(self, record: AttemptRecord) -> None:
        self.attempts[record.endpoint_key] = record.model_copy(deep=True)
        entries = self.history.setdefault(record.endpoint_key, [])
        entries.append(record.model_copy(deep=True))
        del entries[:-HISTORY_LIMIT]

    def delete_attempt(self, endpoint_key: str) -> None:
        self.attempts.pop(endpoint_key, None)

    def list_attempts(self) -> list[AttemptRecord]:
        return [self.attempts[k].model_copy(deep=True) for k in sorted(self.attempts)]

    def list_history(self, endpoint_key: str, limit: int = HISTORY_LIMIT) -> list[AttemptRecord]:
        entries = list(reversed(self.history.get(endpoint_key, [])))
        return [e.model_copy(deep=True) for e in entries[:limit]]

    def get_fingerprint(self, path: str) -> Optional[FileFingerprint]:
        fp = self.fingerprints.get(path)
        return fp.model_copy() if fp else None

    def save_fingerprint(self, fingerprint: FileFingerprint) -> None:
        prev = self.fingerprints.get(fingerprint.path)
        if prev is not None:
            fingerprint = fingerprint.model_copy(update={"created_at": prev.created_at})
        self.fingerprints[fingerprint.path] = fingerprint

    def delete_fingerprint(self, path: str) -> None:
        self.fingerprints.pop(path, None)

    def list_fingerprints(self) -> list[FileFingerprint]:
        return [self.fingerprints[k] for k in sorted(self.fingerprints)]

    def add_conflict(self, conflict: FileConflict) -> int:
        cid = self._next_conflict_id
        self._next_conflict_id += 1
        self.conflicts[cid] = conflict.model_copy(update={"id": cid})
        return cid

    def get_conflict(self, conflict_id: int) -> Optional[FileConflict]:
        c = self.conflicts.get(conflict_id)
        return c.model_copy() if c else None

    def list_conflicts(self, status: Optional[str] = None) -> list[FileConflict]:
        return [
            c.model_copy() for _, c in sorted(self.conflicts.items()) if status is None or c.status == status
        ]

    def update_conflict_existing(self, conflict_id: int, existing_content: str) -> None:
        c = self.conflicts.get(conflict_id)
        if c is not None:
            self.conflicts[conflict_id] = c.model_copy(update={"existing_content": existing_content})

    def resolve_conflict(self, conflict_id: int, resolution: str) -> None:
        c = self.conflicts.get(conflict_id)
        if c is not None:
            self.conflicts[conflict_id] = c.model_copy(
                update={"status": "resolved", "resolution": resolution}
            )

    def add_backup(self, record: BackupRecord) -> None:
        self.backups.append(record)

    def list_backups(self, original_path: Optional[str] = None) -> list[BackupRecord]:
        return [b for b in self.backups if original_path is None or b.original_path == original_path]

    def save_suggestion(self, suggestion: ManualConfigSuggestion) -> None:
        self.suggestions[suggestion.endpoint_key] = suggestion

    def get_suggestion(self, endpoint_key: str) -> Optional[ManualConfigSuggestion]:
        return self.suggestions.get(endpoint_key)

    def delete_suggestion(self, endpoint_key: str) -> None:
        self.suggestions.pop(endpoint_key, None)

    def list_suggestions(self) -> list[ManualConfigSuggestion]:
        return [self.suggestions[k] for k in sorted(self.suggestions)]

    def save_route(self, mapping: RouteMapping) -> None:
        self.routes[mapping.path] = mapping

    def delete_route(self, path: str) -> None:
        self.routes.pop(path, None)

    def list_routes(self) -> list[RouteMapping]:
        return [self.routes[k] for k in sorted(self.routes)]

    def get_routes_version(self) -> int:
        return self.routes_version

    def bump_routes_version(self) -> int:
        self.routes_version += 1
        return self.routes_version

    def record_access(self, endpoint_key: str) -> None:
        stat = self.access.get(endpoint_key) or AccessStat(endpoint_key=endpoint_key)
        self.access[endpoint_key] = stat.model_copy(
            update={"hits": stat.hits + 1, "last_access": now_ts()}
        )

    def list_access_stats(self) -> list[AccessStat]:
        return [self.access[k] for k in sorted(self.access)]
