"""Integrity checks for persisted browser session directories.

A session directory is a Chromium persistent profile. ``validate`` walks
the whole tree and reports missing pieces, corruption indicators and size;
``quick_validate`` only checks that the profile skeleton exists and is cheap
enough to call right after a connection comes up.
"""

from __future__ import annotations

import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

from pydantic import BaseModel

from ..config import INDEXEDDB_ORIGIN, SESSION_PREFIX
from ..errors import CorruptionError
from ..log import SessionLogger, get_logger
from ..models import IssueKind, SessionDirectory, ValidationIssue, ValidationReport

MIN_SESSION_BYTES = 1024 * 1024
STALE_ARTIFACT_SECONDS = 24 * 60 * 60


class SessionLayout(BaseModel):
    required_dirs: tuple[str, ...] = (
        "Default",
        "Default/Local Storage",
        "Default/Session Storage",
        "Default/IndexedDB",
    )
    required_files: tuple[str, ...] = ("Default/Preferences", "Default/Local State")
    optional_files: tuple[str, ...] = ("Default/Cookies", "Default/Web Data", "Default/History")
    auth_paths: tuple[str, ...] = ("Default/Local Storage/leveldb",)
    # Must not be empty once the profile has been used.
    populated_dirs: tuple[str, ...] = ("Default/Local Storage", "Default/IndexedDB")
    leveldb_dir: str = "Default/Local Storage/leveldb"
    leveldb_artifacts: tuple[str, ...] = ("LOCK", "LOG", "LOG.old")
    min_size_bytes: int = MIN_SESSION_BYTES
    stale_artifact_seconds: float = STALE_ARTIFACT_SECONDS

    @property
    def quick_paths(self) -> tuple[str, ...]:
        return self.required_dirs[:2]


def default_layout(indexeddb_origin: str = INDEXEDDB_ORIGIN) -> SessionLayout:
    layout = SessionLayout()
    if indexeddb_origin:
        origin_db = f"Default/IndexedDB/{indexeddb_origin}.indexeddb.leveldb"
        layout = layout.model_copy(update={"auth_paths": (*layout.auth_paths, origin_db)})
    return layout


def directory_stats(path: Path) -> tuple[int, int, float | None]:
    """Total bytes, file count and newest mtime under ``path``.

    Unreadable entries are skipped.
    """
    total = 0
    count = 0
    latest: float | None = None
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                st = os.lstat(os.path.join(root, name))
            except OSError:
                continue
            total += st.st_size
            count += 1
            latest = st.st_mtime if latest is None else max(latest, st.st_mtime)
    return total, count, latest


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ("Bytes", "KB", "MB", "GB", "TB")
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


def instance_id_from_path(path: Path, prefix: str = SESSION_PREFIX) -> str:
    return path.name.removeprefix(f"{prefix}_")


def discover_session_directories(base_dir: Path | str, prefix: str = SESSION_PREFIX) -> list[Path]:
    """Directories named ``<prefix>_<id>`` directly under ``base_dir``."""
    base = Path(base_dir)
    if not base.is_dir():
        return []
    marker = f"{prefix}_"
    return sorted(p for p in base.iterdir() if p.name.startswith(marker) and p.is_dir())


def _to_datetime(ts: float | None) -> datetime | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class SessionValidator:
    def __init__(
        self,
        layout: SessionLayout | None = None,
        *,
        clock: Callable[[], float] = time.time,
        logger: SessionLogger | None = None,
    ) -> None:
        self.layout = layout or default_layout()
        self._clock = clock
        self._log = logger or get_logger(__name__)

    def quick_validate(self, path: Path | str) -> bool:
        root = Path(path)
        if not root.is_dir():
            return False
        return all((root / rel).exists() for rel in self.layout.quick_paths)

    def validate(self, path: Path | str) -> ValidationReport:
        root = Path(path)
        started = time.perf_counter()
        report = ValidationReport(session_path=root)

        if not root.is_dir():
            report.issues.append(
                ValidationIssue(
                    kind=IssueKind.missing_session,
                    message=f"Session directory does not exist: {root}",
                )
            )
            report.duration_ms = int((time.perf_counter() - started) * 1000)
            return report

        report.session_exists = True
        try:
            self._check_structure(root, report)
            self._check_corruption(root, report)
            size, count, latest = directory_stats(root)
            report.size_bytes = size
            report.file_count = count
            report.last_modified_at = _to_datetime(latest if latest is not None else root.stat().st_mtime)
            if size < self.layout.min_size_bytes:
                report.warnings.append(
                    ValidationIssue(
                        kind=IssueKind.small_size,
                        message=f"Session directory size is unusually small: {format_bytes(size)}",
                    )
                )
        except OSError as exc:
            report.issues.append(ValidationIssue(kind=IssueKind.error, message=f"Validation error: {exc}"))

        report.is_valid = (
            not report.issues
            and not report.required_missing
            and not report.auth_missing
        )
        report.duration_ms = int((time.perf_counter() - started) * 1000)
        self._log.debug(
            "Session validated",
            session_path=str(root),
            is_valid=report.is_valid,
            issues=len(report.issues),
            warnings=len(report.warnings),
        )
        return report

    def ensure_valid(self, path: Path | str) -> ValidationReport:
        """Deep-validate and raise :class:`CorruptionError` for a damaged session.

        A missing directory is a session that has not been created yet, so it
        comes back as an ordinary invalid report.
        """
        report = self.validate(path)
        if report.session_exists and not report.is_valid:
            raise CorruptionError(
                f"Session failed validation: {report.session_path}",
                issues=[issue.message for issue in report.issues],
                report=report,
            )
        return report

    def _check_structure(self, root: Path, report: ValidationReport) -> None:
        layout = self.layout
        for rel in layout.required_dirs:
            if (root / rel).is_dir():
                report.required_present.append(rel)
            else:
                report.required_missing.append(rel)
                report.issues.append(
                    ValidationIssue(kind=IssueKind.missing_directory, message=f"Missing required directory: {rel}", path=rel)
                )

        for rel in layout.required_files:
            target = root / rel
            if not target.is_file():
                report.required_missing.append(rel)
                report.issues.append(
                    ValidationIssue(kind=IssueKind.missing_file, message=f"Missing required file: {rel}", path=rel)
                )
            elif target.stat().st_size == 0:
                report.required_present.append(rel)
                report.issues.append(
                    ValidationIssue(kind=IssueKind.empty_file, message=f"Required file is empty: {rel}", path=rel)
                )
            else:
                report.required_present.append(rel)

        for rel in layout.optional_files:
            if not (root / rel).exists():
                report.optional_missing.append(rel)
                report.warnings.append(
                    ValidationIssue(kind=IssueKind.optional_missing, message=f"Optional file missing: {rel}", path=rel)
                )

        for rel in layout.auth_paths:
            if (root / rel).exists():
                report.auth_present.append(rel)
            else:
                report.auth_missing.append(rel)
                report.issues.append(
                    ValidationIssue(
                        kind=IssueKind.missing_auth,
                        message=f"Missing critical authentication file: {rel}",
                        path=rel,
                    )
                )

    def _check_corruption(self, root: Path, report: ValidationReport) -> None:
        layout = self.layout
        for rel in layout.populated_dirs:
            target = root / rel
            if target.is_dir() and not any(target.iterdir()):
                report.issues.append(
                    ValidationIssue(
                        kind=IssueKind.empty_directory,
                        message=f"{Path(rel).name} directory is empty - indicates potential corruption",
                        path=rel,
                    )
                )

        now = self._clock()
        for name in layout.leveldb_artifacts:
            rel = f"{layout.leveldb_dir}/{name}"
            target = root / rel
            if not target.exists():
                continue
            age_seconds = now - target.stat().st_mtime
            if age_seconds > layout.stale_artifact_seconds:
                report.issues.append(
                    ValidationIssue(
                        kind=IssueKind.stale_artifact,
                        message=f"Stale lock file detected: {name} ({age_seconds / 3600:.1f} hours old)",
                        path=rel,
                    )
                )

    def describe(self, path: Path | str) -> SessionDirectory:
        """Inventory entry for one session directory, without a deep check."""
        root = Path(path)
        if not root.is_dir():
            return SessionDirectory(path=root, instance_id=instance_id_from_path(root))
        size, count, latest = directory_stats(root)
        return SessionDirectory(
            path=root,
            instance_id=instance_id_from_path(root),
            size_bytes=size,
            file_count=count,
            last_modified_at=_to_datetime(latest if latest is not None else root.stat().st_mtime),
            structurally_valid=self.quick_validate(root),
            has_auth_data=all((root / rel).exists() for rel in self.layout.auth_paths),
        )

    def validate_many(self, paths: Iterable[Path | str]) -> list[ValidationReport]:
        return [self.validate(p) for p in paths]
