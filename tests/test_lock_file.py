"""Tests for the cross-process lock file."""

import asyncio
import json
import os
import time

import pytest

from session_guard.errors import ContentionError
from session_guard.lock_file import LockFileManager, parse_lock_text, pid_running
from session_guard.models import LegacyLockRecord, LockState, StructuredLockRecord


def _now_ms():
    return int(time.time() * 1000)


def _write_lock(path, pid, timestamp=None, **extra):
    payload = {"pid": pid, "timestamp": _now_ms() if timestamp is None else timestamp, **extra}
    path.write_text(json.dumps(payload), encoding="utf-8")


def _make_manager(path, *, alive=False, **kw):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    manager = LockFileManager(
        path,
        instance_id="shared",
        probe=lambda pid: alive,
        sleep=fake_sleep,
        **kw,
    )
    manager.sleeps = sleeps
    return manager


def test_acquire_without_existing_lock(tmp_path):
    lock = tmp_path / ".auth.lock"
    manager = _make_manager(lock)

    assert asyncio.run(manager.acquire_lock()) is True
    assert manager.state is LockState.locked
    data = json.loads(lock.read_text(encoding="utf-8"))
    assert data["pid"] == os.getpid()
    assert data["instanceId"] == "shared"
    assert "runtimeVersion" in data
    assert "kind" not in data


def test_release_removes_own_lock(tmp_path):
    lock = tmp_path / ".auth.lock"
    manager = _make_manager(lock)
    asyncio.run(manager.acquire_lock())

    assert asyncio.run(manager.release_lock()) is True
    assert not lock.exists()
    assert manager.state is LockState.unlocked


def test_dead_owner_is_replaced(tmp_path):
    lock = tmp_path / ".auth.lock"
    _write_lock(lock, 999999, timestamp=_now_ms() - 1000)
    manager = _make_manager(lock, alive=False)

    assert asyncio.run(manager.acquire_lock()) is True
    assert json.loads(lock.read_text(encoding="utf-8"))["pid"] == manager.pid


def test_legacy_lock_from_dead_owner_is_replaced(tmp_path):
    lock = tmp_path / ".auth.lock"
    lock.write_text("999999", encoding="utf-8")
    manager = _make_manager(lock, alive=False)

    assert asyncio.run(manager.acquire_lock()) is True
    assert json.loads(lock.read_text(encoding="utf-8"))["pid"] == manager.pid


def test_live_owner_raises_contention(tmp_path):
    lock = tmp_path / ".auth.lock"
    _write_lock(lock, 4242)
    manager = _make_manager(lock, alive=True)

    with pytest.raises(ContentionError) as exc_info:
        asyncio.run(manager.acquire_lock(retries=0))
    assert exc_info.value.owner_pid == 4242
    assert manager.state is LockState.unlocked
    assert json.loads(lock.read_text(encoding="utf-8"))["pid"] == 4242
    assert manager.sleeps == []


def test_contention_retries_with_delay(tmp_path):
    lock = tmp_path / ".auth.lock"
    _write_lock(lock, 4242)
    manager = _make_manager(lock, alive=True, retries=2, retry_delay=0.5)

    with pytest.raises(ContentionError, match="after 3 attempts"):
        asyncio.run(manager.acquire_lock())
    assert manager.sleeps == [0.5, 0.5]


def test_stale_lock_held_by_live_process_is_kept(tmp_path):
    lock = tmp_path / ".auth.lock"
    _write_lock(lock, 4242, timestamp=_now_ms() - 120_000)
    manager = _make_manager(lock, alive=True, timeout=30)

    with pytest.raises(ContentionError, match="still running"):
        asyncio.run(manager.acquire_lock(retries=0))
    assert lock.exists()


def test_stale_lock_from_exited_process_is_removed(tmp_path):
    lock = tmp_path / ".auth.lock"
    _write_lock(lock, 4242, timestamp=_now_ms() - 120_000)
    answers = iter([True, False])
    manager = LockFileManager(lock, probe=lambda pid: next(answers), timeout=30)

    assert asyncio.run(manager.acquire_lock(retries=0)) is True
    assert json.loads(lock.read_text(encoding="utf-8"))["pid"] == manager.pid


def test_own_pid_lock_is_refreshed(tmp_path):
    lock = tmp_path / ".auth.lock"
    _write_lock(lock, os.getpid(), timestamp=1)
    manager = _make_manager(lock, alive=True)

    assert asyncio.run(manager.acquire_lock(retries=0)) is True
    assert json.loads(lock.read_text(encoding="utf-8"))["timestamp"] > 1


def test_unreadable_lock_is_replaced(tmp_path):
    lock = tmp_path / ".auth.lock"
    lock.write_text("{not json", encoding="utf-8")
    manager = _make_manager(lock, alive=True)

    assert asyncio.run(manager.acquire_lock(retries=0)) is True


def test_release_refuses_foreign_lock(tmp_path):
    lock = tmp_path / ".auth.lock"
    _write_lock(lock, 4242)
    manager = _make_manager(lock, alive=True)

    assert asyncio.run(manager.release_lock()) is False
    assert lock.exists()


def test_release_without_lock_file(tmp_path):
    manager = _make_manager(tmp_path / ".auth.lock")
    assert asyncio.run(manager.release_lock()) is True


def test_get_lock_info(tmp_path):
    lock = tmp_path / ".auth.lock"
    manager = _make_manager(lock, alive=False, timeout=30)
    assert manager.get_lock_info() is None

    _write_lock(lock, 4242, timestamp=_now_ms() - 60_000, instanceId="feature_x")
    info = manager.get_lock_info()
    assert info.owner_pid == 4242
    assert info.is_running is False
    assert info.is_stale is True
    assert info.age_ms >= 60_000
    assert info.record.instance_id == "feature_x"


def test_parse_lock_text_variants():
    legacy = parse_lock_text(" 1234\n", 5000)
    assert isinstance(legacy, LegacyLockRecord)
    assert legacy.legacy_format
    assert legacy.timestamp == 5000

    structured = parse_lock_text(
        '{"pid": 7, "timestamp": 10, "instanceId": "shared", "nodeVersion": "v18.0.0"}', 0
    )
    assert isinstance(structured, StructuredLockRecord)
    assert not structured.legacy_format
    assert structured.instance_id == "shared"
    assert structured.runtime_version == "v18.0.0"

    assert parse_lock_text("", 0) is None
    assert parse_lock_text("not-a-pid", 0) is None
    assert parse_lock_text("[1, 2]", 0) is None
    assert parse_lock_text('{"timestamp": 1}', 0) is None


def test_pid_running():
    assert pid_running(os.getpid()) is True
    assert pid_running(0) is False
    assert pid_running(-5) is False


def test_acquire_leaves_only_the_lock_file(tmp_path):
    lock = tmp_path / ".auth.lock"
    manager = _make_manager(lock)
    asyncio.run(manager.acquire_lock())

    assert [p.name for p in tmp_path.iterdir()] == [".auth.lock"]
    assert manager.get_lock_info().exists


def test_write_never_clobbers_a_lock_created_meanwhile(tmp_path):
    lock = tmp_path / ".auth.lock"
    manager = _make_manager(lock)
    _write_lock(lock, 4242)

    with pytest.raises(ContentionError):
        manager._write_record()

    assert json.loads(lock.read_text(encoding="utf-8"))["pid"] == 4242
    assert [p.name for p in tmp_path.iterdir()] == [".auth.lock"]
