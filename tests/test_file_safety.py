from datetime import datetime
from pathlib import Path

from beacon.safety.classifier import default_classifier
from beacon.safety.manager import FilePolicy, FileSafetyManager
from beacon.store.memory_store import InMemoryStore


def manager(store: InMemoryStore) -> FileSafetyManager:
    return FileSafetyManager(store, clock=lambda: datetime(2024, 5, 1, 12, 30, 0, 123456))


def test_policy_lookup_by_file_name(tmp_path: Path):
    fsm = FileSafetyManager(InMemoryStore())
    assert fsm.policy_for(tmp_path / "llms.txt") is FilePolicy.CONTENT_ANALYSIS
    assert fsm.policy_for(tmp_path / ".well-known" / "ai-plugin.json") is FilePolicy.CONTENT_ANALYSIS
    assert fsm.policy_for(tmp_path / "robots.txt") is FilePolicy.NEVER_OVERWRITE


def test_create_new_file_records_fingerprint(tmp_path: Path):
    store = InMemoryStore()
    fsm = manager(store)
    target = tmp_path / "a" / "b.txt"

    res = fsm.create(target, "hello\n")

    assert res.success
    assert res.action_taken == "created_new"
    assert target.read_text(encoding="utf-8") == "hello\n"
    assert store.get_fingerprint(str(target)) is not None
    assert fsm.verify(target)


def test_never_overwrite_refuses_foreign_file(tmp_path: Path):
    store = InMemoryStore()
    fsm = manager(store)
    target = tmp_path / "notes.txt"
    target.write_text("operator wrote this\n", encoding="utf-8")

    res = fsm.create(target, "ours\n", FilePolicy.NEVER_OVERWRITE)

    assert res.success is False
    assert any("content conflict" in e for e in res.errors)
    assert target.read_text(encoding="utf-8") == "operator wrote this\n"
    assert store.get_fingerprint(str(target)) is None


def test_never_overwrite_identical_and_own_files(tmp_path: Path):
    store = InMemoryStore()
    fsm = manager(store)
    target = tmp_path / "notes.txt"

    assert fsm.create(target, "v1\n", FilePolicy.NEVER_OVERWRITE).success

    same = fsm.create(target, "v1\n", FilePolicy.NEVER_OVERWRITE)
    assert same.success and same.action_taken == "file_already_correct"

    updated = fsm.create(target, "v2\n", FilePolicy.NEVER_OVERWRITE)
    assert updated.success and updated.action_taken == "updated_our_file"
    assert target.read_text(encoding="utf-8") == "v2\n"
    assert fsm.verify(target)


def test_backup_then_overwrite_and_restore(tmp_path: Path):
    store = InMemoryStore()
    fsm = manager(store)
    target = tmp_path / "robots.txt"
    target.write_text("User-agent: *\nDisallow: /private/\n", encoding="utf-8")

    res = fsm.create(target, "replaced\n", FilePolicy.BACKUP_THEN_OVERWRITE)

    assert res.success and res.action_taken == "backup_and_overwrite"
    backup = Path(res.backup_path)
    assert backup.name == "robots.txt.beacon-backup-20240501-123000-123456"
    assert backup.read_text(encoding="utf-8") == "User-agent: *\nDisallow: /private/\n"
    assert [b.backup_path for b in fsm.list_backups(target)] == [str(backup)]

    restored = fsm.restore_backup(backup)
    assert restored.success
    assert target.read_text(encoding="utf-8") == "User-agent: *\nDisallow: /private/\n"
    # the restored content is not ours any more
    assert store.get_fingerprint(str(target)) is None


def test_restore_unknown_backup_fails(tmp_path: Path):
    fsm = manager(InMemoryStore())
    res = fsm.restore_backup(tmp_path / "nope.beacon-backup-x")
    assert res.success is False
    assert "unknown backup" in res.errors[0]


def test_content_analysis_overwrites_default_boilerplate(tmp_path: Path):
    fsm = manager(InMemoryStore())
    target = tmp_path / "robots.txt"
    target.write_text("User-agent: *\nDisallow: /wp-admin/\nAllow: /wp-admin/admin-ajax.php\n", encoding="utf-8")

    res = fsm.create(target, "new\n", FilePolicy.CONTENT_ANALYSIS)

    assert res.success and res.action_taken == "overwrite_after_analysis"
    assert target.read_text(encoding="utf-8") == "new\n"


def test_content_analysis_refuses_user_prose(tmp_path: Path):
    fsm = manager(InMemoryStore())
    target = tmp_path / "llms.txt"
    original = "Our family has run this bakery since 1952. Please be kind to our crawlers.\n"
    target.write_text(original, encoding="utf-8")

    res = fsm.create(target, "# LLMS.txt\n", FilePolicy.CONTENT_ANALYSIS)

    assert res.success is False
    assert any("manual review" in e for e in res.errors)
    assert target.read_text(encoding="utf-8") == original


def test_classifier_rules_per_kind():
    c = default_classifier()

    assert c.classify(Path("robots.txt"), "User-agent: *\nDisallow:\n").safe
    assert c.classify(Path("robots.txt"), "").rule == "empty"
    assert not c.classify(Path("robots.txt"), "User-agent: *\nThis is our private note.\n").safe
    assert c.classify(Path("robots.txt"), "# BEGIN beacon /robots.txt\nx\n# END beacon /robots.txt\n").rule == (
        "managed_section"
    )

    assert c.classify(Path("llms.txt"), "# LLMS.txt - policy\n").safe
    assert c.classify(Path("servers.json"), '{"schema_version": "1.0"}').rule == "machine_json"
    assert not c.classify(Path("servers.json"), '{"hand": "made"}').safe
    assert not c.classify(Path("servers.json"), "not json").safe

    verdict = c.classify(Path("notes.md"), "Generated by sitegen\n")
    assert verdict.safe and verdict.rule == "small_generated"
    assert not c.classify(Path("notes.md"), "Generated by sitegen\n" + "x" * 2000).safe


def test_defer_records_conflict_and_resolution_applies_it(tmp_path: Path):
    store = InMemoryStore()
    fsm = manager(store)
    target = tmp_path / "llms.txt"
    target.write_text("hand written\n", encoding="utf-8")

    res = fsm.create(target, "proposed\n", FilePolicy.DEFER_TO_OPERATOR)

    assert res.success is False
    assert res.action_taken == "deferred_to_operator"
    assert target.read_text(encoding="utf-8") == "hand written\n"
    [conflict] = store.list_conflicts("pending")
    assert conflict.id == res.conflict_id
    assert conflict.existing_content == "hand written\n"
    assert conflict.proposed_content == "proposed\n"

    applied = fsm.resolve_conflict(conflict.id, accept=True)
    assert applied.success
    assert target.read_text(encoding="utf-8") == "proposed\n"
    assert applied.backup_path is not None
    assert store.get_conflict(conflict.id).resolution == "applied"
    assert fsm.resolve_conflict(conflict.id, accept=True).success is False


def test_same_proposal_reuses_the_pending_conflict(tmp_path: Path):
    store = InMemoryStore()
    fsm = manager(store)
    target = tmp_path / "llms.txt"
    target.write_text("hand written\n", encoding="utf-8")

    first = fsm.create(target, "proposed\n", FilePolicy.DEFER_TO_OPERATOR)
    target.write_text("hand written, then edited\n", encoding="utf-8")
    second = fsm.create(target, "proposed\n", FilePolicy.DEFER_TO_OPERATOR)

    assert second.conflict_id == first.conflict_id
    [conflict] = store.list_conflicts()
    assert conflict.existing_content == "hand written, then edited\n"

    fsm.resolve_conflict(conflict.id, accept=False)
    third = fsm.create(target, "proposed\n", FilePolicy.DEFER_TO_OPERATOR)
    assert third.conflict_id != first.conflict_id


def test_stored_conflicts_are_not_shared_with_callers(tmp_path: Path):
    store = InMemoryStore()
    fsm = manager(store)
    target = tmp_path / "llms.txt"
    target.write_text("hand written\n", encoding="utf-8")
    cid = fsm.create(target, "proposed\n", FilePolicy.DEFER_TO_OPERATOR).conflict_id

    store.get_conflict(cid).status = "resolved"
    store.list_conflicts()[0].proposed_content = "tampered"

    assert store.get_conflict(cid).status == "pending"
    assert store.get_conflict(cid).proposed_content == "proposed\n"


def test_rejected_conflict_leaves_file(tmp_path: Path):
    store = InMemoryStore()
    fsm = manager(store)
    target = tmp_path / "llms.txt"
    target.write_text("hand written\n", encoding="utf-8")

    res = fsm.create(target, "proposed\n", FilePolicy.DEFER_TO_OPERATOR)
    rejected = fsm.resolve_conflict(res.conflict_id, accept=False)

    assert rejected.success
    assert target.read_text(encoding="utf-8") == "hand written\n"
    assert store.get_conflict(res.conflict_id).status == "resolved"
    assert store.list_conflicts("pending") == []


def test_delete_only_when_unchanged(tmp_path: Path):
    store = InMemoryStore()
    fsm = manager(store)
    target = tmp_path / "ai-plugin.json"
    fsm.create(target, '{"schema_version": "v1"}')

    target.write_text('{"schema_version": "v1", "edited": true}', encoding="utf-8")
    refused = fsm.delete_if_unchanged(target)
    assert refused.success is False
    assert target.exists()

    foreign = tmp_path / "foreign.txt"
    foreign.write_text("x", encoding="utf-8")
    assert fsm.delete_if_unchanged(foreign).success is False
    assert foreign.exists()

    other = tmp_path / "other.json"
    fsm.create(other, "{}")
    deleted = fsm.delete_if_unchanged(other)
    assert deleted.success and deleted.action_taken == "deleted"
    assert not other.exists()
    assert store.get_fingerprint(str(other)) is None


def test_revert_undoes_create_and_overwrite(tmp_path: Path):
    store = InMemoryStore()
    fsm = manager(store)

    new = tmp_path / "new.txt"
    res = fsm.create(new, "fresh\n")
    assert fsm.revert(res)
    assert not new.exists()
    assert store.get_fingerprint(str(new)) is None

    old = tmp_path / "old.txt"
    old.write_text("before\n", encoding="utf-8")
    res = fsm.create(old, "after\n", FilePolicy.BACKUP_THEN_OVERWRITE)
    assert fsm.revert(res)
    assert old.read_text(encoding="utf-8") == "before\n"
    assert store.get_fingerprint(str(old)) is None


def test_revert_drops_claim_on_matching_operator_file(tmp_path: Path):
    store = InMemoryStore()
    fsm = manager(store)
    target = tmp_path / "ai-plugin.json"
    target.write_text('{"schema_version": "v1"}', encoding="utf-8")

    res = fsm.create(target, '{"schema_version": "v1"}')
    assert res.action_taken == "file_already_correct"
    assert store.get_fingerprint(str(target)) is not None

    assert fsm.revert(res)
    assert target.read_text(encoding="utf-8") == '{"schema_version": "v1"}'
    assert store.get_fingerprint(str(target)) is None
    assert fsm.delete_if_unchanged(target).success is False
    assert target.exists()


def test_revert_keeps_earlier_claim_on_our_own_file(tmp_path: Path):
    store = InMemoryStore()
    fsm = manager(store)
    target = tmp_path / "notes.txt"
    fsm.create(target, "v1\n")
    before = store.get_fingerprint(str(target))

    res = fsm.create(target, "v1\n")
    assert fsm.revert(res)

    assert store.get_fingerprint(str(target)).content_hash == before.content_hash


def test_revert_refuses_after_outside_edit(tmp_path: Path):
    fsm = manager(InMemoryStore())
    target = tmp_path / "new.txt"
    res = fsm.create(target, "fresh\n")
    target.write_text("edited by someone\n", encoding="utf-8")

    assert fsm.revert(res) is False
    assert target.read_text(encoding="utf-8") == "edited by someone\n"
