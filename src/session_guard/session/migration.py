"""Consolidation and migration of session directories.

Consolidation collapses duplicate ``<prefix>_<id>`` directories into the one
the current identity points at, by renaming the best candidate inside the
same base directory. Migration handles a change of identity: the best
existing session is copied (never moved) into the new location and only kept
if it validates.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Callable, Iterable

from ..config import SHARED_INSTANCE_ID, session_path
from ..errors import SessionIOError
from ..identity.resolver import IdentityResolver, ResolveOptions
from ..log import SessionLogger, get_logger
from ..models import (
    CleanupResult,
    ConsolidationResult,
    InstanceIdentity,
    MigrationResult,
    SessionDirectory,
    SessionStrategy,
)
from .backup import BackupManager
from .files import copy_entry, iter_dirs, iter_files, remove_path
from .validation import SessionValidator, discover_session_directories

RECENCY_WINDOW_SECONDS = 7 * 24 * 60 * 60
FILE_COUNT_CAP = 10
SIZE_CAP_BYTES = 10 * 1024 * 1024
RECENCY_WEIGHT = 0.4
FILE_COUNT_WEIGHT = 0.3
SIZE_WEIGHT = 0.3


def score_session(directory: SessionDirectory, now: float) -> float:
    """Weighted recency/file-count/size score in ``[0, 1]``."""
    if directory.last_modified_at is None:
        recency = 0.0
    else:
        age = now - directory.last_modified_at.timestamp()
        recency = min(1.0, max(0.0, 1 - age / RECENCY_WINDOW_SECONDS))
    files = min(1.0, directory.file_count / FILE_COUNT_CAP)
    size = min(1.0, directory.size_bytes / SIZE_CAP_BYTES)
    return recency * RECENCY_WEIGHT + files * FILE_COUNT_WEIGHT + size * SIZE_WEIGHT


class SessionMigrator:
    def __init__(
        self,
        base_dir: Path | str,
        *,
        resolver: IdentityResolver | None = None,
        validator: SessionValidator | None = None,
        backups: BackupManager | None = None,
        clock: Callable[[], float] = time.time,
        logger: SessionLogger | None = None,
    ) -> None:
        self.base_dir = Path(base_dir)
        self._log = logger or get_logger(__name__)
        self.resolver = resolver or IdentityResolver(logger=self._log)
        self.validator = validator or SessionValidator(logger=self._log)
        self.backups = backups
        self._clock = clock

    def _candidates(self, paths: Iterable[Path]) -> list[SessionDirectory]:
        candidates = []
        for path in paths:
            directory = self.validator.describe(path)
            if directory.file_count > 0 and directory.structurally_valid:
                candidates.append(directory)
        return candidates

    def select_best_source(self, paths: Iterable[Path]) -> SessionDirectory | None:
        candidates = self._candidates(paths)
        if not candidates:
            return None
        now = self._clock()
        return max(candidates, key=lambda d: score_session(d, now))

    # ── Consolidation ─────────────────────────────────────────────────────

    async def consolidate(
        self,
        base_dir: Path | str | None = None,
        target_id: str = SHARED_INSTANCE_ID,
    ) -> ConsolidationResult:
        base = Path(base_dir) if base_dir is not None else self.base_dir
        target = session_path(base, target_id)
        result = ConsolidationResult(target_path=target)

        paths = await asyncio.to_thread(discover_session_directories, base)
        result.source_paths = paths
        if not paths:
            self._log.info("No session directories to consolidate", base_dir=str(base))
            return result
        if paths == [target]:
            result.already_consolidated = True
            self._log.debug("Sessions already consolidated", target=str(target))
            return result

        candidates = await asyncio.to_thread(self._candidates, paths)
        if not candidates:
            self._log.warning("No usable session to consolidate from", base_dir=str(base), found=len(paths))
            return result

        now = self._clock()
        best = max(candidates, key=lambda d: score_session(d, now))
        result.chosen_source = best.path
        self._log.info(
            "Selected session for consolidation",
            source=str(best.path),
            target=str(target),
            score=round(score_session(best, now), 3),
        )

        if best.path != target:
            if target.exists():
                if self.backups is not None:
                    backup = await asyncio.to_thread(self.backups.create_backup, target, "consolidation")
                    if backup.success:
                        result.backup_path = backup.backup_path
                    else:
                        self._log.warning("Consolidation backup failed", target=str(target), error=backup.error)
                try:
                    await asyncio.to_thread(remove_path, target)
                    result.removed_paths.append(target)
                except OSError as exc:
                    result.errors.append(f"{target}: {exc}")
                    self._log.error("Failed to clear consolidation target", target=str(target), error=str(exc))
                    return result
            try:
                await asyncio.to_thread(best.path.rename, target)
            except OSError as exc:
                result.errors.append(f"{best.path}: {exc}")
                self._log.error("Failed to rename session", source=str(best.path), target=str(target), error=str(exc))
                return result
        result.consolidated = True
        result.preserved_count = 1

        # With the winner in place, every other session directory is a duplicate.
        for path in paths:
            if path in (best.path, target):
                continue
            try:
                await asyncio.to_thread(remove_path, path)
                result.removed_paths.append(path)
            except OSError as exc:
                result.errors.append(f"{path}: {exc}")
                self._log.warning("Failed to remove duplicate session", path=str(path), error=str(exc))

        self._log.info(
            "Session consolidation completed",
            target=str(target),
            removed=len(result.removed_paths),
            errors=len(result.errors),
        )
        return result

    # ── Migration ─────────────────────────────────────────────────────────

    async def _copy_sequential(self, source: Path, target: Path) -> None:
        dirs = await asyncio.to_thread(lambda: list(iter_dirs(source)))
        files = await asyncio.to_thread(lambda: list(iter_files(source)))
        await asyncio.to_thread(target.mkdir, parents=True, exist_ok=False)
        for rel in dirs:
            await asyncio.to_thread((target / rel).mkdir, parents=True, exist_ok=True)
        for rel in files:
            await asyncio.to_thread(copy_entry, source / rel, target / rel)

    async def migrate(
        self,
        new_strategy: SessionStrategy | None = None,
        *,
        backup: bool = True,
        current: InstanceIdentity | None = None,
        options: ResolveOptions | None = None,
    ) -> MigrationResult:
        """Copy the best existing session to the path of the new identity.

        The source is never modified. A copy that fails validation is
        removed again and reported; a copy that fails with a filesystem error
        is removed and re-raised as :class:`SessionIOError`.
        """
        opts = options or ResolveOptions()
        if new_strategy is not None:
            opts = opts.model_copy(update={"strategy": new_strategy})
        new_identity = self.resolver.resolve(opts)
        target = session_path(self.base_dir, new_identity.id)
        result = MigrationResult(old_identity=current, new_identity=new_identity, target_path=target)

        if target.exists():
            result.success = True
            result.already_migrated = True
            self._log.info("Target session already exists, no migration needed", target=str(target))
            return result

        paths = await asyncio.to_thread(discover_session_directories, self.base_dir)
        best = await asyncio.to_thread(self.select_best_source, [p for p in paths if p != target])
        if best is None:
            result.success = True
            self._log.info("No suitable source session found for migration", base_dir=str(self.base_dir))
            return result
        result.source_path = best.path

        if backup and self.backups is not None:
            backup_result = await asyncio.to_thread(self.backups.create_backup, best.path, "migration")
            if backup_result.success:
                result.backup_path = backup_result.backup_path
            else:
                self._log.warning("Migration backup failed", source=str(best.path), error=backup_result.error)

        try:
            await self._copy_sequential(best.path, target)
        except OSError as exc:
            self._log.error("Session copy failed", source=str(best.path), target=str(target), error=str(exc))
            await self._discard(target)
            raise SessionIOError(f"Failed to copy {best.path} to {target}: {exc}") from exc

        validation = await asyncio.to_thread(self.validator.validate, target)
        result.validation = validation
        if not validation.is_valid:
            result.error = "Migrated session failed validation: " + "; ".join(i.message for i in validation.issues)
            self._log.warning("Migrated session failed validation", target=str(target), issues=len(validation.issues))
            await self._discard(target)
            return result

        result.success = True
        result.migrated = True
        self._log.info(
            "Session migrated",
            source=str(best.path),
            target=str(target),
            strategy=new_identity.strategy.value,
        )
        return result

    async def _discard(self, target: Path) -> None:
        if not target.exists():
            return
        try:
            await asyncio.to_thread(remove_path, target)
        except OSError as exc:
            self._log.warning("Failed to remove partial session copy", target=str(target), error=str(exc))

    # ── Cleanup ───────────────────────────────────────────────────────────

    async def cleanup_old_sessions(
        self,
        *,
        current_id: str | None = None,
        keep_current: bool = True,
        max_age: float = RECENCY_WINDOW_SECONDS,
        create_backup: bool = True,
    ) -> CleanupResult:
        """Remove sessions untouched for longer than ``max_age`` seconds."""
        result = CleanupResult()
        current = session_path(self.base_dir, current_id) if current_id else None
        now = self._clock()

        for path in await asyncio.to_thread(discover_session_directories, self.base_dir):
            if keep_current and path == current:
                result.kept_paths.append(path)
                continue
            directory = await asyncio.to_thread(self.validator.describe, path)
            modified = directory.last_modified_at.timestamp() if directory.last_modified_at else now
            if now - modified <= max_age:
                result.kept_paths.append(path)
                continue

            if create_backup and self.backups is not None:
                backup_result = await asyncio.to_thread(self.backups.create_backup, path, "cleanup")
                if not backup_result.success:
                    result.errors.append(f"{path}: backup failed: {backup_result.error}")
                    result.kept_paths.append(path)
                    continue
                result.backup_paths.append(backup_result.backup_path)

            try:
                await asyncio.to_thread(remove_path, path)
                result.removed_paths.append(path)
            except OSError as exc:
                result.errors.append(f"{path}: {exc}")

        self._log.info(
            "Old session cleanup completed",
            removed=len(result.removed_paths),
            kept=len(result.kept_paths),
            errors=len(result.errors),
        )
        return result
