"""Tests for severity assessment and the recovery ladder."""

import asyncio
import logging
import os
import time

import pytest

from conftest import build_session
from session_guard.models import RecoveryLevel, Severity
from session_guard.session.backup import BackupManager
from session_guard.session.recovery import RecoveryManager, assess_severity, holding_path
from session_guard.session.validation import discover_session_directories


class SteppingClock:
    def __init__(self, step):
        self.now = 0.0
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


@pytest.fixture
def backups(tmp_path, logger):
    return BackupManager(tmp_path / "backups", logger=logger)


def _make_manager(validator, logger, backups=None, **kw):
    return RecoveryManager(validator=validator, backups=backups, logger=logger, **kw)


def test_assess_severity(tmp_path, validator):
    healthy = build_session(tmp_path / ".auth_ok")
    assert assess_severity(validator.validate(tmp_path / ".auth_missing")) is Severity.none
    assert assess_severity(validator.validate(healthy)) is Severity.minor

    moderate = build_session(tmp_path / ".auth_moderate")
    (moderate / "Default" / "Preferences").unlink()
    assert assess_severity(validator.validate(moderate)) is Severity.moderate

    major = build_session(tmp_path / ".auth_major", auth=False)
    assert assess_severity(validator.validate(major)) is Severity.major

    critical = tmp_path / ".auth_critical"
    critical.mkdir()
    (critical / "stray.txt").write_text("x", encoding="utf-8")
    assert assess_severity(validator.validate(critical)) is Severity.critical

    empty = tmp_path / ".auth_empty"
    (empty / "Default").mkdir(parents=True)
    assert assess_severity(validator.validate(empty)) is Severity.critical


def test_missing_session_needs_no_recovery(tmp_path, validator, logger):
    outcome = asyncio.run(_make_manager(validator, logger).recover(tmp_path / ".auth_missing"))
    assert outcome.success
    assert not outcome.performed
    assert outcome.severity is Severity.none


def test_missing_optional_file_gets_lightest_repair(tmp_path, validator, logger, backups):
    session = build_session(tmp_path / ".auth_shared", optional=False)
    (session / "Default" / "Cache").mkdir()
    (session / "Default" / "Cache" / "data_0").write_bytes(b"c")

    outcome = asyncio.run(_make_manager(validator, logger, backups).recover(session))

    assert outcome.success
    assert outcome.severity is Severity.minor
    assert outcome.level_applied is RecoveryLevel.clear_cache
    assert outcome.levels_attempted == [RecoveryLevel.clear_cache]
    assert not outcome.reauth_required
    assert outcome.backup_created
    assert not (session / "Default" / "Cache").exists()
    assert (session / "Default" / "Local Storage" / "leveldb" / "000003.log").is_file()


def test_missing_preferences_resets_browser_state(tmp_path, validator, logger, backups):
    session = build_session(tmp_path / ".auth_shared")
    (session / "Default" / "Preferences").unlink()

    outcome = asyncio.run(_make_manager(validator, logger, backups).recover(session))

    assert outcome.success
    assert outcome.severity is Severity.moderate
    assert outcome.level_applied is RecoveryLevel.reset_browser_state
    assert outcome.validation_after.is_valid
    assert (session / "Default" / "Preferences").read_text(encoding="utf-8") == "{}"
    assert (session / "Default" / "Cookies").is_file()
    assert not (session / "Default" / "History").exists()


def test_stale_artifacts_are_cleared(tmp_path, validator, logger, backups):
    session = build_session(tmp_path / ".auth_shared")
    lock = session / "Default" / "Local Storage" / "leveldb" / "LOCK"
    lock.write_bytes(b"")
    old = time.time() - 3 * 24 * 60 * 60
    os.utime(lock, (old, old))

    outcome = asyncio.run(_make_manager(validator, logger, backups).recover(session))

    assert outcome.success
    assert outcome.level_applied is RecoveryLevel.clear_cache
    assert not lock.exists()


def test_forced_partial_reset_keeps_auth_data(tmp_path, validator, logger, backups):
    session = build_session(tmp_path / ".auth_shared")
    (session / "Default" / "Preferences").unlink()
    (session / "Default" / "GPUCache").mkdir()
    (session / "Default" / "GPUCache" / "index").write_bytes(b"g")

    outcome = asyncio.run(
        _make_manager(validator, logger, backups).recover(session, force_level=RecoveryLevel.partial_reset)
    )

    assert outcome.success
    assert outcome.level_applied is RecoveryLevel.partial_reset
    assert (session / "Default" / "Local Storage" / "leveldb" / "000003.log").is_file()
    assert (session / "Default" / "Cookies").is_file()
    assert not (session / "Default" / "GPUCache").exists()
    assert not (tmp_path / ".recovery-.auth_shared").exists()


def test_destructive_levels_require_backup(tmp_path, validator, logger):
    session = build_session(tmp_path / ".auth_shared", auth=False)

    outcome = asyncio.run(_make_manager(validator, logger, backups=None).recover(session))

    assert not outcome.success
    assert not outcome.performed
    assert outcome.severity is Severity.major
    assert "requires a successful backup" in outcome.error
    assert (session / "Default" / "Preferences").is_file()


def test_major_corruption_escalates_to_complete_reset(tmp_path, validator, logger, backups):
    session = build_session(tmp_path / ".auth_shared", auth=False)

    outcome = asyncio.run(_make_manager(validator, logger, backups).recover(session))

    assert outcome.success
    assert outcome.levels_attempted == [RecoveryLevel.partial_reset, RecoveryLevel.complete_reset]
    assert outcome.reauth_required
    assert not session.exists()
    assert outcome.backup_path.is_dir()


def test_critical_corruption_resets_completely(tmp_path, validator, logger, backups):
    session = tmp_path / ".auth_shared"
    session.mkdir()
    (session / "stray.txt").write_text("x", encoding="utf-8")

    outcome = asyncio.run(_make_manager(validator, logger, backups).recover(session))

    assert outcome.success
    assert outcome.severity is Severity.critical
    assert outcome.level_applied is RecoveryLevel.complete_reset
    assert outcome.reauth_required
    assert not session.exists()
    assert not outcome.validation_after.session_exists


def test_time_budget_returns_partial_outcome(tmp_path, validator, logger):
    session = build_session(tmp_path / ".auth_shared")
    (session / "Default" / "Preferences").unlink()
    manager = _make_manager(validator, logger, clock=SteppingClock(step=50))

    outcome = asyncio.run(
        manager.recover(session, auto_backup_before_recovery=False, max_recovery_time=30)
    )

    assert not outcome.success
    assert outcome.partial
    assert outcome.levels_attempted == []
    assert "budget" in outcome.error
    assert not (session / "Default" / "Preferences").exists()


def test_recovery_without_validation_stops_after_first_level(tmp_path, validator, logger):
    session = build_session(tmp_path / ".auth_shared")
    (session / "Default" / "Preferences").unlink()

    outcome = asyncio.run(
        _make_manager(validator, logger).recover(
            session,
            auto_backup_before_recovery=False,
            validate_after_recovery=False,
        )
    )

    assert outcome.success
    assert outcome.validation_after is None
    assert outcome.levels_attempted == [RecoveryLevel.reset_browser_state]


def test_recover_with_default_logger(tmp_path, validator, caplog):
    session = build_session(tmp_path / ".auth_shared")
    (session / "Default" / "Preferences").unlink()
    manager = RecoveryManager(validator=validator)

    with caplog.at_level(logging.INFO, logger="session_guard"):
        outcome = asyncio.run(manager.recover(session, auto_backup_before_recovery=False))

    assert outcome.success
    assert outcome.level_applied is RecoveryLevel.reset_browser_state
    assert any("recovery_level=reset_browser_state" in m for m in caplog.messages)


def test_holding_copy_is_not_a_session_directory(tmp_path):
    session = build_session(tmp_path / ".auth_shared")
    holding = holding_path(session)
    holding.mkdir()

    assert holding.parent == session.parent
    assert discover_session_directories(tmp_path) == [session]
