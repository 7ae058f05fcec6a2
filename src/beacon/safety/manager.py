from __future__ import annotations

import fnmatch
import hashlib
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from beacon.config import DEFAULT_FILE_POLICIES
from beacon.domain.models import BackupRecord, FileConflict, FileFingerprint, now_ts
from beacon.safety.classifier import ContentClassifier, default_classifier
from beacon.store.base import StateStore

logger = logging.getLogger(__name__)


class FilePolicy(str, Enum):
    NEVER_OVERWRITE = "never_overwrite"
    BACKUP_THEN_OVERWRITE = "backup_overwrite"
    CONTENT_ANALYSIS = "content_analysis"
    DEFER_TO_OPERATOR = "defer_to_operator"


# action_taken values
ACTION_NONE = "none"
ACTION_CREATED = "created_new"
ACTION_ALREADY_CORRECT = "file_already_correct"
ACTION_UPDATED_OURS = "updated_our_file"
ACTION_BACKUP_OVERWRITE = "backup_and_overwrite"
ACTION_ANALYSIS_OVERWRITE = "overwrite_after_analysis"
ACTION_DEFERRED = "deferred_to_operator"
ACTION_DELETED = "deleted"
ACTION_RESTORED = "restored_backup"

_REVERTIBLE = {ACTION_UPDATED_OURS, ACTION_BACKUP_OVERWRITE, ACTION_ANALYSIS_OVERWRITE}


def file_sha256(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


@dataclass
class FileWriteResult:
    path: str
    success: bool = False
    action_taken: str = ACTION_NONE
    policy_used: Optional[FilePolicy] = None
    backup_path: Optional[str] = None
    # bytes on disk before a write, so the write can be undone
    previous_content: Optional[bytes] = None
    previous_fingerprint: Optional[FileFingerprint] = None
    conflict_id: Optional[int] = None
    messages: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def changed_disk(self) -> bool:
        return self.success and (self.action_taken == ACTION_CREATED or self.action_taken in _REVERTIBLE)


class FileSafetyManager:
    """The only component that writes, overwrites or deletes files.

    Every successful write records a sha256 fingerprint; a file whose on-disk
    hash still equals its fingerprint is "ours" and may be updated or
    deleted freely. Anything else goes through the file's policy.
    """

    def __init__(
        self,
        store: StateStore,
        classifier: Optional[ContentClassifier] = None,
        policies: Optional[dict[str, str]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.classifier = classifier or default_classifier()
        self.policies = dict(policies or DEFAULT_FILE_POLICIES)
        self._clock = clock

    def policy_for(self, path: Path) -> FilePolicy:
        name = path.name
        if name in self.policies and name != "default":
            return FilePolicy(self.policies[name])
        for pattern, value in self.policies.items():
            if pattern != "default" and fnmatch.fnmatch(name, pattern):
                return FilePolicy(value)
        return FilePolicy(self.policies.get("default", FilePolicy.NEVER_OVERWRITE.value))

    # ----------------------------
    # writes
    # ----------------------------

    def create(self, path: Path, content: str, policy: Optional[FilePolicy] = None) -> FileWriteResult:
        policy = policy or self.policy_for(path)
        res = FileWriteResult(path=str(path), policy_used=policy)

        if not path.exists():
            if self._write(path, content, res):
                res.success = True
                res.action_taken = ACTION_CREATED
                res.messages.append(f"created {path}")
            return res

        if not path.is_file():
            res.errors.append(f"not a regular file: {path}")
            return res

        try:
            existing = path.read_bytes()
        except PermissionError:
            res.errors.append(f"permission denied: cannot read {path}")
            return res

        if existing == content.encode("utf-8"):
            res.previous_fingerprint = self.store.get_fingerprint(str(path))
            self._record_fingerprint(path)
            res.success = True
            res.action_taken = ACTION_ALREADY_CORRECT
            res.messages.append(f"{path} already has the expected content")
            return res

        res.previous_content = existing
        res.previous_fingerprint = self.store.get_fingerprint(str(path))
        if self._matches_fingerprint(path, existing):
            if self._write(path, content, res):
                res.success = True
                res.action_taken = ACTION_UPDATED_OURS
                res.messages.append(f"updated {path} (created by us, unmodified since)")
            return res

        if policy is FilePolicy.NEVER_OVERWRITE:
            logger.warning("refusing to overwrite %s", path)
            res.errors.append(f"content conflict: {path} exists and was not created by us")
            return res

        if policy is FilePolicy.BACKUP_THEN_OVERWRITE:
            backup = self._backup(path, res)
            if backup is None:
                return res
            if self._write(path, content, res):
                res.success = True
                res.action_taken = ACTION_BACKUP_OVERWRITE
                res.messages.append(f"backed up {path} to {backup} and overwrote it")
            return res

        if policy is FilePolicy.CONTENT_ANALYSIS:
            verdict = self.classifier.classify(path, existing.decode("utf-8", errors="replace"))
            if not verdict.safe:
                logger.warning("refusing to overwrite %s: %s", path, verdict.reason)
                res.errors.append(f"content conflict: {verdict.reason}")
                return res
            if self._write(path, content, res):
                res.success = True
                res.action_taken = ACTION_ANALYSIS_OVERWRITE
                res.messages.append(f"overwrote {path}: {verdict.reason}")
            return res

        return self._defer(path, content, existing.decode("utf-8", errors="replace"), res)

    def revert(self, result: FileWriteResult) -> bool:
        """Undo a write made by ``create``. Refuses if the file changed since."""
        path = Path(result.path)
        if result.success and result.action_taken == ACTION_ALREADY_CORRECT:
            # bytes untouched; only the ownership claim is undone
            self._restore_fingerprint(path, result.previous_fingerprint)
            return True
        if not result.changed_disk:
            return True
        if not self.verify(path):
            logger.warning("not reverting %s: modified after our write", path)
            return False

        if result.action_taken == ACTION_CREATED:
            path.unlink()
            self.store.delete_fingerprint(str(path))
            return True

        path.write_bytes(result.previous_content or b"")
        self._restore_fingerprint(path, result.previous_fingerprint)
        return True

    def delete_if_unchanged(self, path: Path) -> FileWriteResult:
        res = FileWriteResult(path=str(path))
        fp = self.store.get_fingerprint(str(path))
        if not path.exists():
            if fp is not None:
                self.store.delete_fingerprint(str(path))
            res.success = True
            res.messages.append(f"{path} already absent")
            return res
        if fp is None:
            res.errors.append(f"refusing to delete {path}: no fingerprint on record")
            return res
        if file_sha256(path) != fp.content_hash:
            logger.warning("refusing to delete %s: modified since our last write", path)
            res.errors.append(f"refusing to delete {path}: modified since our last write")
            return res
        try:
            path.unlink()
        except PermissionError:
            res.errors.append(f"permission denied: cannot delete {path}")
            return res
        self.store.delete_fingerprint(str(path))
        res.success = True
        res.action_taken = ACTION_DELETED
        res.messages.append(f"deleted {path}")
        return res

    def verify(self, path: Path) -> bool:
        fp = self.store.get_fingerprint(str(path))
        return fp is not None and path.is_file() and file_sha256(path) == fp.content_hash

    # ----------------------------
    # backups
    # ----------------------------

    def list_backups(self, path: Optional[Path] = None) -> list[BackupRecord]:
        return self.store.list_backups(str(path) if path is not None else None)

    def restore_backup(self, backup_path: Path) -> FileWriteResult:
        record = next(
            (b for b in self.store.list_backups() if b.backup_path == str(backup_path)), None
        )
        if record is None:
            return FileWriteResult(path=str(backup_path), errors=[f"unknown backup: {backup_path}"])

        original = Path(record.original_path)
        res = FileWriteResult(path=str(original))
        if not backup_path.is_file():
            res.errors.append(f"backup file missing: {backup_path}")
            return res
        try:
            shutil.copy2(backup_path, original)
        except PermissionError:
            res.errors.append(f"permission denied: cannot write {original}")
            return res

        # what we wrote is gone; only keep the fingerprint if it still applies
        fp = self.store.get_fingerprint(str(original))
        if fp is not None and fp.content_hash != file_sha256(original):
            self.store.delete_fingerprint(str(original))
        res.success = True
        res.action_taken = ACTION_RESTORED
        res.backup_path = str(backup_path)
        res.messages.append(f"restored {original} from {backup_path}")
        logger.info("restored %s from %s", original, backup_path)
        return res

    def backup_path_for(self, path: Path) -> Path:
        stamp = self._clock().strftime("%Y%m%d-%H%M%S-%f")
        return path.with_name(f"{path.name}.beacon-backup-{stamp}")

    # ----------------------------
    # conflicts
    # ----------------------------

    def resolve_conflict(self, conflict_id: int, accept: bool) -> FileWriteResult:
        conflict = self.store.get_conflict(conflict_id)
        if conflict is None:
            return FileWriteResult(path="", errors=[f"unknown conflict: {conflict_id}"])
        if conflict.status == "resolved":
            return FileWriteResult(
                path=conflict.path, errors=[f"conflict {conflict_id} already resolved"]
            )

        path = Path(conflict.path)
        if not accept:
            self.store.resolve_conflict(conflict_id, "rejected")
            return FileWriteResult(
                path=conflict.path, success=True, messages=[f"rejected proposed content for {path}"]
            )

        res = self.create(path, conflict.proposed_content, FilePolicy.BACKUP_THEN_OVERWRITE)
        if res.success:
            self.store.resolve_conflict(conflict_id, "applied")
        return res

    # ----------------------------
    # internals
    # ----------------------------

    def _matches_fingerprint(self, path: Path, existing: bytes) -> bool:
        fp = self.store.get_fingerprint(str(path))
        return fp is not None and fp.content_hash == hashlib.sha256(existing).hexdigest()

    def _write(self, path: Path, content: str, res: FileWriteResult) -> bool:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except PermissionError:
            res.errors.append(f"permission denied: cannot write {path}")
            return False
        except OSError as e:
            res.errors.append(f"write failed for {path}: {e}")
            return False
        self._record_fingerprint(path)
        logger.debug("wrote %s (%d bytes)", path, len(content))
        return True

    def _record_fingerprint(self, path: Path) -> None:
        ts = now_ts()
        self.store.save_fingerprint(
            FileFingerprint(path=str(path), content_hash=file_sha256(path), created_at=ts, updated_at=ts)
        )

    def _backup(self, path: Path, res: FileWriteResult) -> Optional[Path]:
        target = self.backup_path_for(path)
        try:
            shutil.copy2(path, target)
        except PermissionError:
            res.errors.append(f"permission denied: cannot back up {path}")
            return None
        except OSError as e:
            res.errors.append(f"backup failed for {path}: {e}")
            return None
        self.store.add_backup(BackupRecord(original_path=str(path), backup_path=str(target)))
        res.backup_path = str(target)
        logger.info("backed up %s to %s", path, target)
        return target

    def _restore_fingerprint(self, path: Path, previous: Optional[FileFingerprint]) -> None:
        if previous is not None:
            self.store.save_fingerprint(previous)
        else:
            self.store.delete_fingerprint(str(path))

    def _defer(self, path: Path, content: str, existing: str, res: FileWriteResult) -> FileWriteResult:
        # one pending decision per path and proposal
        pending = next(
            (
                c
                for c in self.store.list_conflicts("pending")
                if c.path == str(path) and c.proposed_content == content
            ),
            None,
        )
        if pending is not None:
            cid = pending.id
            if pending.existing_content != existing:
                self.store.update_conflict_existing(cid, existing)
            logger.info("conflict %d for %s still pending", cid, path)
        else:
            cid = self.store.add_conflict(
                FileConflict(path=str(path), proposed_content=content, existing_content=existing)
            )
            logger.warning("conflict %d recorded for %s; deferring to operator", cid, path)
        res.action_taken = ACTION_DEFERRED
        res.conflict_id = cid
        res.warnings.append(f"content conflict on {path}; recorded as conflict {cid} for operator review")
        res.errors.append(f"content conflict: deferred to operator (conflict {cid})")
        return res

    def defer(self, path: Path, content: str) -> FileWriteResult:
        """Record a conflict for ``path`` without touching it."""
        existing = path.read_text(encoding="utf-8", errors="replace") if path.is_file() else ""
        res = FileWriteResult(path=str(path), policy_used=FilePolicy.DEFER_TO_OPERATOR)
        return self._defer(path, content, existing, res)
