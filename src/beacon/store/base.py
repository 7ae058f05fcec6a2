from __future__ import annotations

from typing import Optional, Protocol

from beacon.domain.models import (
    AccessStat,
    AttemptRecord,
    BackupRecord,
    CapabilityReport,
    FileConflict,
    FileFingerprint,
    ManualConfigSuggestion,
    RouteMapping,
)

HISTORY_LIMIT = 50


class StateStore(Protocol):
    """Persistence used by the engine.

    Everything the engine caches in-process (capability reports, the route
    table) can be rebuilt from here at process start.
    """

    # capability reports, keyed by endpoint path
    def get_capability_report(self, path: str) -> Optional[CapabilityReport]: ...

    def save_capability_report(self, path: str, report: CapabilityReport) -> None: ...

    def clear_capability_reports(self, path: Optional[str] = None) -> int: ...

    # attempt records (one per endpoint) and their history
    def get_attempt(self, endpoint_key: str) -> Optional[AttemptRecord]: ...

    def save_attempt(self, record: AttemptRecord) -> None: ...

    def delete_attempt(self, endpoint_key: str) -> None: ...

    def list_attempts(self) -> list[AttemptRecord]: ...

    def list_history(self, endpoint_key: str, limit: int = HISTORY_LIMIT) -> list[AttemptRecord]: ...

    # file fingerprints
    def get_fingerprint(self, path: str) -> Optional[FileFingerprint]: ...

    def save_fingerprint(self, fingerprint: FileFingerprint) -> None: ...

    def delete_fingerprint(self, path: str) -> None: ...

    def list_fingerprints(self) -> list[FileFingerprint]: ...

    # conflicts
    def add_conflict(self, conflict: FileConflict) -> int: ...

    def get_conflict(self, conflict_id: int) -> Optional[FileConflict]: ...

    def list_conflicts(self, status: Optional[str] = None) -> list[FileConflict]: ...

    def update_conflict_existing(self, conflict_id: int, existing_content: str) -> None: ...

    def resolve_conflict(self, conflict_id: int, resolution: str) -> None: ...

    # backups
    def add_backup(self, record: BackupRecord) -> None: ...

    def list_backups(self, original_path: Optional[str] = None) -> list[BackupRecord]: ...

    # manual config suggestions
    def save_suggestion(self, suggestion: ManualConfigSuggestion) -> None: ...

    def get_suggestion(self, endpoint_key: str) -> Optional[ManualConfigSuggestion]: ...

    def delete_suggestion(self, endpoint_key: str) -> None: ...

    def list_suggestions(self) -> list[ManualConfigSuggestion]: ...

    # application routing table
    def save_route(self, mapping: RouteMapping) -> None: ...

    def delete_route(self, path: str) -> None: ...

    def list_routes(self) -> list[RouteMapping]: ...

    def get_routes_version(self) -> int: ...

    def bump_routes_version(self) -> int: ...

    # access stats
    def record_access(self, endpoint_key: str) -> None: ...

    def list_access_stats(self) -> list[AccessStat]: ...
