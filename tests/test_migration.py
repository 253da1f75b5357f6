"""Tests for session migration and old-session cleanup."""

import asyncio

import pytest

from conftest import FakeDetector, age_tree, build_session
from session_guard.errors import SessionIOError
from session_guard.identity.resolver import IdentityResolver, ResolveOptions
from session_guard.models import SessionStrategy
from session_guard.session import migration as migration_module
from session_guard.session.backup import BackupManager
from session_guard.session.migration import SessionMigrator


def _make_migrator(base_dir, validator, logger, *, branch=None, backups=None):
    resolver = IdentityResolver(environ={}, detector=FakeDetector(branch))
    return SessionMigrator(base_dir, resolver=resolver, validator=validator, backups=backups, logger=logger)


def test_migrate_copies_best_session(base_dir, validator, logger):
    build_session(base_dir / ".auth_shared")
    migrator = _make_migrator(base_dir, validator, logger)

    result = asyncio.run(migrator.migrate(SessionStrategy.team))

    assert result.success
    assert result.migrated
    assert result.source_path == base_dir / ".auth_shared"
    assert result.target_path == base_dir / ".auth_team"
    assert result.new_identity.id == "team"
    assert result.validation.is_valid
    assert (base_dir / ".auth_team" / "Default" / "Local Storage" / "leveldb" / "000003.log").is_file()
    # Source is copied, never moved.
    assert (base_dir / ".auth_shared" / "Default" / "Preferences").is_file()


def test_migrate_to_branch_session(base_dir, validator, logger):
    build_session(base_dir / ".auth_shared")
    migrator = _make_migrator(base_dir, validator, logger, branch="feature/login")

    result = asyncio.run(migrator.migrate(SessionStrategy.branch_specific))

    assert result.migrated
    assert (base_dir / ".auth_feature_login").is_dir()


def test_migrate_preserves_empty_directories(base_dir, validator, logger):
    source = build_session(base_dir / ".auth_shared")
    (source / "Default" / "Extension State").mkdir()
    migrator = _make_migrator(base_dir, validator, logger)

    asyncio.run(migrator.migrate(options=ResolveOptions(instance_id="copy")))

    assert (base_dir / ".auth_copy" / "Default" / "Extension State").is_dir()


def test_migrate_when_target_exists(base_dir, validator, logger):
    build_session(base_dir / ".auth_shared")
    build_session(base_dir / ".auth_team")

    result = asyncio.run(_make_migrator(base_dir, validator, logger).migrate(SessionStrategy.team))

    assert result.success
    assert result.already_migrated
    assert not result.migrated


def test_migrate_without_source(base_dir, validator, logger):
    result = asyncio.run(_make_migrator(base_dir, validator, logger).migrate(SessionStrategy.team))
    assert result.success
    assert not result.migrated
    assert result.source_path is None
    assert not (base_dir / ".auth_team").exists()


def test_invalid_copy_is_discarded_and_source_kept(base_dir, validator, logger):
    source = build_session(base_dir / ".auth_shared")
    (source / "Default" / "Preferences").unlink()

    result = asyncio.run(_make_migrator(base_dir, validator, logger).migrate(SessionStrategy.team))

    assert not result.success
    assert not result.migrated
    assert "failed validation" in result.error
    assert not (base_dir / ".auth_team").exists()
    assert (source / "Default" / "Local State").is_file()


def test_migrate_creates_backup(tmp_path, base_dir, validator, logger):
    build_session(base_dir / ".auth_shared")
    backups = BackupManager(tmp_path / "backups", logger=logger)
    migrator = _make_migrator(base_dir, validator, logger, backups=backups)

    result = asyncio.run(migrator.migrate(SessionStrategy.team))

    assert result.migrated
    assert result.backup_path is not None
    assert result.backup_path.is_dir()
    assert backups.list_backups(".auth_shared")[0].reason == "migration"


def test_copy_failure_raises_and_cleans_up(monkeypatch, base_dir, validator, logger):
    build_session(base_dir / ".auth_shared")
    calls = []

    def failing_copy(source, target):
        calls.append(source)
        if len(calls) > 2:
            raise PermissionError("denied")
        return 0

    monkeypatch.setattr(migration_module, "copy_entry", failing_copy)
    migrator = _make_migrator(base_dir, validator, logger)

    with pytest.raises(SessionIOError):
        asyncio.run(migrator.migrate(SessionStrategy.team))
    assert not (base_dir / ".auth_team").exists()
    assert (base_dir / ".auth_shared" / "Default" / "Preferences").is_file()


def test_select_best_source_skips_empty_directories(base_dir, validator, logger):
    build_session(base_dir / ".auth_good")
    (base_dir / ".auth_empty").mkdir()
    migrator = _make_migrator(base_dir, validator, logger)

    best = migrator.select_best_source([base_dir / ".auth_empty", base_dir / ".auth_good"])
    assert best.path == base_dir / ".auth_good"
    assert migrator.select_best_source([base_dir / ".auth_empty"]) is None


def test_cleanup_old_sessions(tmp_path, base_dir, validator, logger):
    build_session(base_dir / ".auth_shared")
    age_tree(base_dir / ".auth_shared", 60)
    old = build_session(base_dir / ".auth_old_branch")
    age_tree(old, 30)
    build_session(base_dir / ".auth_recent")
    backups = BackupManager(tmp_path / "backups", logger=logger)
    migrator = _make_migrator(base_dir, validator, logger, backups=backups)

    result = asyncio.run(migrator.cleanup_old_sessions(current_id="shared"))

    assert result.removed_paths == [old]
    assert len(result.backup_paths) == 1
    assert (base_dir / ".auth_shared").is_dir()
    assert (base_dir / ".auth_recent").is_dir()
    assert sorted(p.name for p in result.kept_paths) == [".auth_recent", ".auth_shared"]


def test_cleanup_without_backup(base_dir, validator, logger):
    old = build_session(base_dir / ".auth_old")
    age_tree(old, 30)
    migrator = _make_migrator(base_dir, validator, logger)

    result = asyncio.run(migrator.cleanup_old_sessions(create_backup=False))
    assert result.removed_paths == [old]
    assert result.backup_paths == []
