"""Tests for the session startup and shutdown sequence."""

import asyncio
import json
import os
import time
from functools import partial

import pytest

from conftest import FakeDetector, build_session
from session_guard.config import lock_path
from session_guard.coordinator import SessionCoordinator
from session_guard.errors import ConfigurationError, ContentionError
from session_guard.events import SessionEvent
from session_guard.identity.resolver import IdentityResolver, ResolveOptions
from session_guard.lock_file import LockFileManager
from session_guard.models import LockState, SessionStrategy
from session_guard.session.backup import BackupManager


async def _no_sleep(delay):
    return None


def _make_coordinator(tmp_path, base_dir, validator, logger, *, options=None, environ=None, **kw):
    env = environ or {}
    kw.setdefault("lock_factory", partial(LockFileManager, probe=lambda pid: False, sleep=_no_sleep))
    return SessionCoordinator(
        base_dir,
        options=options,
        environ=env,
        resolver=IdentityResolver(environ=env, detector=FakeDetector()),
        validator=validator,
        backups=BackupManager(tmp_path / "backups", logger=logger),
        logger=logger,
        **kw,
    )


def test_start_on_empty_base_dir(tmp_path, base_dir, validator, logger):
    coordinator = _make_coordinator(tmp_path, base_dir, validator, logger)

    async def run():
        lease = await coordinator.start()
        held = json.loads(lock_path(base_dir).read_text(encoding="utf-8"))
        released = await coordinator.stop()
        return lease, held, released

    lease, held, released = asyncio.run(run())

    assert lease.identity.id == "shared"
    assert lease.session_path == base_dir / ".auth_shared"
    assert not lease.validation.session_exists
    assert lease.recovery is None
    assert held["pid"] == os.getpid()
    assert held["instanceId"] == "shared"
    assert released
    assert not lock_path(base_dir).exists()


def test_start_creates_missing_base_dir(tmp_path, validator, logger):
    base = tmp_path / "nested" / "sessions"
    coordinator = _make_coordinator(tmp_path, base, validator, logger)

    async def run():
        await coordinator.start()
        await coordinator.stop()

    asyncio.run(run())
    assert base.is_dir()


def test_unusable_base_dir_is_configuration_error(tmp_path, validator, logger):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    coordinator = _make_coordinator(tmp_path, blocker, validator, logger)

    with pytest.raises(ConfigurationError):
        asyncio.run(coordinator.start())


def test_contention_leaves_session_untouched(tmp_path, base_dir, validator, logger):
    session = build_session(base_dir / ".auth_shared")
    (session / "Default" / "Preferences").unlink()
    lock_path(base_dir).write_text(
        json.dumps({"pid": 4242, "timestamp": int(time.time() * 1000)}), encoding="utf-8"
    )
    coordinator = _make_coordinator(
        tmp_path,
        base_dir,
        validator,
        logger,
        lock_factory=partial(LockFileManager, probe=lambda pid: True, retries=0, sleep=_no_sleep),
    )

    with pytest.raises(ContentionError):
        asyncio.run(coordinator.start())
    assert not (session / "Default" / "Preferences").exists()
    assert coordinator.lease is None


def test_corrupted_session_is_recovered_under_lock(tmp_path, base_dir, validator, logger):
    session = build_session(base_dir / ".auth_shared")
    (session / "Default" / "Preferences").unlink()
    coordinator = _make_coordinator(tmp_path, base_dir, validator, logger)

    async def run():
        lease = await coordinator.start()
        await coordinator.stop()
        return lease

    lease = asyncio.run(run())

    assert "Session failed validation, recovery scheduled" in logger.messages("warning")
    assert lease.recovery.success
    assert lease.validation.is_valid
    assert lease.consolidation.already_consolidated


def test_shared_start_consolidates_duplicates(tmp_path, base_dir, validator, logger):
    build_session(base_dir / ".auth_4")
    build_session(base_dir / ".auth_19")
    coordinator = _make_coordinator(tmp_path, base_dir, validator, logger)

    async def run():
        lease = await coordinator.start()
        await coordinator.stop()
        return lease

    lease = asyncio.run(run())

    assert lease.consolidation.consolidated
    assert lease.validation.is_valid
    assert [p.name for p in base_dir.iterdir() if p.is_dir()] == [".auth_shared"]


def test_consolidation_can_be_disabled(tmp_path, base_dir, validator, logger):
    build_session(base_dir / ".auth_4")
    coordinator = _make_coordinator(
        tmp_path, base_dir, validator, logger, environ={"SG_CONSOLIDATE_SESSIONS": "false"}
    )

    async def run():
        lease = await coordinator.start()
        await coordinator.stop()
        return lease

    lease = asyncio.run(run())
    assert lease.consolidation is None
    assert lease.migration.migrated
    assert (base_dir / ".auth_4").is_dir()
    assert (base_dir / ".auth_shared").is_dir()


def test_new_instance_id_migrates_existing_session(tmp_path, base_dir, validator, logger):
    build_session(base_dir / ".auth_shared")
    options = ResolveOptions(strategy=SessionStrategy.branch_specific, instance_id="worker-1")
    coordinator = _make_coordinator(tmp_path, base_dir, validator, logger, options=options)

    async def run():
        lease = await coordinator.start()
        await coordinator.stop()
        return lease

    lease = asyncio.run(run())

    assert lease.identity.id == "worker-1"
    assert lease.migration.migrated
    assert lease.validation.is_valid
    assert (base_dir / ".auth_shared").is_dir()
    assert (base_dir / ".auth_worker-1").is_dir()


def test_disconnect_event_releases_lock(tmp_path, base_dir, validator, logger):
    coordinator = _make_coordinator(tmp_path, base_dir, validator, logger)

    async def run():
        await coordinator.start()
        await coordinator.events.emit(SessionEvent.disconnected, reason="client closed")

    asyncio.run(run())

    assert not lock_path(base_dir).exists()
    assert coordinator.lock.state is LockState.unlocked


def test_ready_event_runs_quick_validation(tmp_path, base_dir, validator, logger):
    build_session(base_dir / ".auth_shared")
    coordinator = _make_coordinator(tmp_path, base_dir, validator, logger)

    async def run():
        await coordinator.start()
        await coordinator.events.emit(SessionEvent.ready)
        await coordinator.stop()

    asyncio.run(run())
    assert "Session ready" in logger.messages("info")


def test_failed_preparation_releases_lock(monkeypatch, tmp_path, base_dir, validator, logger):
    coordinator = _make_coordinator(tmp_path, base_dir, validator, logger)

    async def broken(lease):
        raise RuntimeError("disk vanished")

    monkeypatch.setattr(coordinator, "_prepare", broken)

    with pytest.raises(RuntimeError):
        asyncio.run(coordinator.start())
    assert not lock_path(base_dir).exists()
