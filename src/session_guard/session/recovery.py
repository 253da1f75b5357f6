"""Automatic repair of corrupted session directories.

Recovery walks up a ladder of increasingly destructive levels, starting at
the one matched to the assessed severity and escalating only while the
session still fails validation:

1. ``clear_cache``: drop cache directories and leveldb log/lock artifacts.
2. ``reset_browser_state``: also drop volatile browser state and rebuild the
   missing profile skeleton, keeping local storage, IndexedDB and cookies.
3. ``partial_reset``: set the auth data aside, recreate the directory from
   scratch, put the auth data back.
4. ``complete_reset``: delete the directory; the client must sign in again.

Levels 3 and 4 need a successful backup first when backups are enabled.
The whole run is bounded by ``max_recovery_time``; running out of time
returns a partial outcome instead of raising.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Callable

from ..config import MAX_RECOVERY_SECONDS
from ..log import SessionLogger, get_logger
from ..models import IssueKind, RecoveryLevel, RecoveryOutcome, Severity, ValidationReport
from .backup import BackupManager
from .files import copy_entry, copy_tree, remove_path
from .validation import SessionLayout, SessionValidator

CACHE_PATHS = (
    "Default/Cache",
    "Default/Code Cache",
    "Default/GPUCache",
    "Default/Service Worker",
    "Default/blob_storage",
    "Default/File System",
)

VOLATILE_STATE_PATHS = (
    "Default/Session Storage",
    "Default/Web Data",
    "Default/History",
    "Default/Current Session",
    "Default/Current Tabs",
    "Default/Last Session",
    "Default/Last Tabs",
)

AUTH_PRESERVE_PATHS = ("Default/Local Storage", "Default/IndexedDB", "Default/Cookies")

# Must not match the "<prefix>_<id>" session naming.
HOLDING_PREFIX = ".recovery-"

LEVEL_FOR_SEVERITY = {
    Severity.minor: RecoveryLevel.clear_cache,
    Severity.moderate: RecoveryLevel.reset_browser_state,
    Severity.major: RecoveryLevel.partial_reset,
    Severity.critical: RecoveryLevel.complete_reset,
}

_MODERATE_KINDS = {IssueKind.missing_directory, IssueKind.missing_file, IssueKind.empty_file, IssueKind.error}
_MAJOR_KINDS = {IssueKind.missing_auth, IssueKind.empty_directory}


def holding_path(root: Path) -> Path:
    return root.with_name(f"{HOLDING_PREFIX}{root.name}")


def assess_severity(report: ValidationReport) -> Severity:
    """Map a validation report onto the recovery severity ladder."""
    if not report.session_exists:
        return Severity.none
    if report.is_valid and not report.warnings:
        return Severity.none
    if report.file_count == 0 or "Default" in report.required_missing:
        return Severity.critical
    kinds = report.issue_kinds()
    if kinds & _MAJOR_KINDS:
        return Severity.major
    if kinds & _MODERATE_KINDS:
        return Severity.moderate
    return Severity.minor


class RecoveryManager:
    def __init__(
        self,
        *,
        validator: SessionValidator | None = None,
        backups: BackupManager | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: SessionLogger | None = None,
    ) -> None:
        self._log = logger or get_logger(__name__)
        self.validator = validator or SessionValidator(logger=self._log)
        self.backups = backups
        self._clock = clock

    @property
    def layout(self) -> SessionLayout:
        return self.validator.layout

    async def recover(
        self,
        session_path: Path | str,
        *,
        auto_backup_before_recovery: bool = True,
        validate_after_recovery: bool = True,
        max_recovery_time: float = MAX_RECOVERY_SECONDS,
        force_level: RecoveryLevel | None = None,
    ) -> RecoveryOutcome:
        root = Path(session_path)
        started = self._clock()
        outcome = RecoveryOutcome(session_path=root)

        def finish() -> RecoveryOutcome:
            outcome.duration_ms = int((self._clock() - started) * 1000)
            self._log.info(
                "Session recovery finished",
                session_path=str(root),
                success=outcome.success,
                partial=outcome.partial,
                recovery_level=outcome.level_applied.value if outcome.level_applied else None,
                duration_ms=outcome.duration_ms,
            )
            return outcome

        before = await asyncio.to_thread(self.validator.validate, root)
        outcome.validation_before = before
        if not before.session_exists:
            # A session that was never created is not corrupted.
            outcome.success = True
            return finish()

        outcome.severity = assess_severity(before)
        if outcome.severity is Severity.none and force_level is None:
            outcome.success = True
            return finish()

        start_level = force_level or LEVEL_FOR_SEVERITY[outcome.severity]
        self._log.warning(
            "Session recovery started",
            session_path=str(root),
            severity=outcome.severity.value,
            start_level=start_level.value,
        )

        backup_ok = False
        if auto_backup_before_recovery:
            if self.backups is None:
                self._log.warning("No backup manager configured, destructive recovery disabled")
            else:
                backup = await asyncio.to_thread(
                    self.backups.create_backup, root, f"recovery-{outcome.severity.value}"
                )
                backup_ok = backup.success
                outcome.backup_created = backup.success
                outcome.backup_path = backup.backup_path
                if not backup.success:
                    self._log.warning("Recovery backup failed", session_path=str(root), error=backup.error)

        levels = list(RecoveryLevel)
        for level in levels[levels.index(start_level):]:
            if self._clock() - started > max_recovery_time:
                outcome.partial = True
                outcome.error = f"Recovery time budget of {max_recovery_time:g}s exceeded"
                self._log.warning("Recovery time budget exceeded", session_path=str(root), next_level=level.value)
                break
            if level.destructive and auto_backup_before_recovery and not backup_ok:
                outcome.partial = bool(outcome.levels_attempted)
                outcome.error = f"{level.value} requires a successful backup"
                self._log.warning("Destructive recovery skipped without backup", recovery_level=level.value)
                break

            outcome.levels_attempted.append(level)
            outcome.performed = True
            try:
                await asyncio.to_thread(self._apply, level, root)
            except OSError as exc:
                outcome.error = f"{level.value} failed: {exc}"
                self._log.error("Recovery level failed", recovery_level=level.value, error=str(exc))
                continue
            outcome.level_applied = level

            if level is RecoveryLevel.complete_reset:
                outcome.reauth_required = True
                if validate_after_recovery:
                    outcome.validation_after = await asyncio.to_thread(self.validator.validate, root)
                outcome.success = True
                break
            if not validate_after_recovery:
                outcome.success = True
                break

            after = await asyncio.to_thread(self.validator.validate, root)
            outcome.validation_after = after
            if after.is_valid:
                outcome.success = True
                break
            self._log.info("Session still invalid, escalating", recovery_level=level.value, issues=len(after.issues))

        if outcome.success:
            outcome.error = None
            outcome.partial = False
        return finish()

    # ── Levels ────────────────────────────────────────────────────────────

    def _apply(self, level: RecoveryLevel, root: Path) -> None:
        if level is RecoveryLevel.clear_cache:
            self._clear_cache(root)
        elif level is RecoveryLevel.reset_browser_state:
            self._reset_browser_state(root)
        elif level is RecoveryLevel.partial_reset:
            self._partial_reset(root)
        else:
            self._complete_reset(root)

    def _remove_relative(self, root: Path, paths: tuple[str, ...]) -> int:
        removed = 0
        for rel in paths:
            target = root / rel
            if target.exists() or target.is_symlink():
                remove_path(target)
                removed += 1
        return removed

    def _clear_cache(self, root: Path) -> None:
        artifacts = tuple(f"{self.layout.leveldb_dir}/{name}" for name in self.layout.leveldb_artifacts)
        removed = self._remove_relative(root, CACHE_PATHS + artifacts)
        self._log.info("Cleared cache and temporary files", session_path=str(root), removed=removed)

    def _ensure_skeleton(self, root: Path) -> None:
        for rel in self.layout.required_dirs:
            (root / rel).mkdir(parents=True, exist_ok=True)
        for rel in self.layout.required_files:
            target = root / rel
            if not target.is_file() or target.stat().st_size == 0:
                target.write_text("{}", encoding="utf-8")

    def _reset_browser_state(self, root: Path) -> None:
        self._clear_cache(root)
        removed = self._remove_relative(root, VOLATILE_STATE_PATHS)
        self._ensure_skeleton(root)
        self._log.info("Reset browser state", session_path=str(root), removed=removed)

    def _partial_reset(self, root: Path) -> None:
        holding = holding_path(root)
        if holding.exists():
            remove_path(holding)
        holding.mkdir(parents=True)
        preserved = []
        for rel in AUTH_PRESERVE_PATHS:
            source = root / rel
            if source.is_dir():
                copy_tree(source, holding / rel)
                preserved.append(rel)
            elif source.is_file():
                copy_entry(source, holding / rel)
                preserved.append(rel)

        # The holding copy is only dropped once the auth data is back in place.
        remove_path(root)
        root.mkdir(parents=True)
        copy_tree(holding, root)
        self._ensure_skeleton(root)
        remove_path(holding)
        self._log.info("Partial reset completed", session_path=str(root), preserved=len(preserved))

    def _complete_reset(self, root: Path) -> None:
        remove_path(root)
        self._log.warning("Session reset, re-authentication required", session_path=str(root))
