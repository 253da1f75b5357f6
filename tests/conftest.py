"""Shared fixtures: on-disk Chromium profiles and a recording logger."""

from __future__ import annotations

import os
import time
from pathlib import Path

import pytest

from session_guard.models import GitBranchInfo
from session_guard.session.validation import SessionLayout, SessionValidator


class RecordingLogger:
    def __init__(self):
        self.records = []

    def log(self, level, message, /, **fields):
        self.records.append((level, message, fields))

    def debug(self, message, /, **fields):
        self.log("debug", message, **fields)

    def info(self, message, /, **fields):
        self.log("info", message, **fields)

    def warning(self, message, /, **fields):
        self.log("warning", message, **fields)

    def error(self, message, /, **fields):
        self.log("error", message, **fields)

    def messages(self, level=None):
        return [m for lvl, m, _ in self.records if level is None or lvl == level]


class FakeBranchCache:
    def __init__(self):
        self.invalidations = 0

    def invalidate(self):
        self.invalidations += 1


class FakeDetector:
    def __init__(self, branch=None, *, error=None):
        self.branch = branch
        self.error = error
        self.calls = 0
        self.cache = FakeBranchCache()

    def detect(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return GitBranchInfo(is_repository=self.branch is not None, branch=self.branch)


def build_session(root: Path, *, optional: bool = True, auth: bool = True) -> Path:
    """Write a minimal but complete Chromium profile under ``root``."""
    default = root / "Default"
    (default / "Session Storage").mkdir(parents=True, exist_ok=True)
    (default / "Local Storage").mkdir(parents=True, exist_ok=True)
    (default / "IndexedDB" / "https_example.com_0.indexeddb.leveldb").mkdir(parents=True, exist_ok=True)
    (default / "Preferences").write_text('{"profile": {"name": "Person 1"}}', encoding="utf-8")
    (default / "Local State").write_text('{"browser": {"enabled_labs_experiments": []}}', encoding="utf-8")
    (default / "Session Storage" / "000001.log").write_bytes(b"s" * 16)
    (default / "IndexedDB" / "https_example.com_0.indexeddb.leveldb" / "000001.log").write_bytes(b"i" * 32)
    if auth:
        (default / "Local Storage" / "leveldb").mkdir(exist_ok=True)
        (default / "Local Storage" / "leveldb" / "000003.log").write_bytes(b"a" * 64)
    if optional:
        for name in ("Cookies", "Web Data", "History"):
            (default / name).write_bytes(b"sqlite")
    return root


def age_tree(root: Path, days: float) -> None:
    """Set every file under ``root`` to ``days`` in the past."""
    ts = time.time() - days * 86400
    for dirpath, _dirs, files in os.walk(root):
        for name in files:
            os.utime(os.path.join(dirpath, name), (ts, ts))


@pytest.fixture
def logger():
    return RecordingLogger()


@pytest.fixture
def validator(logger):
    return SessionValidator(SessionLayout(), logger=logger)


@pytest.fixture
def base_dir(tmp_path):
    base = tmp_path / "sessions"
    base.mkdir()
    return base
