"""Point-in-time copies of session directories.

Backups live under ``BACKUP_DIR`` as ``<session name>_<timestamp>_<reason>``
with a ``backup_metadata.json`` describing where they came from. Each
session keeps at most ``MAX_BACKUPS`` copies; older ones are pruned after a
successful backup.
"""

from __future__ import annotations

import json
import os
import platform
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from ..config import BACKUP_DIR, MAX_BACKUPS
from ..log import SessionLogger, get_logger
from ..models import BackupInfo, BackupResult
from .files import copy_tree, remove_path

METADATA_FILE = "backup_metadata.json"
METADATA_VERSION = 1

_REASON_RE = re.compile(r"[^A-Za-z0-9\-]+")


def _safe_reason(reason: str) -> str:
    return _REASON_RE.sub("-", reason).strip("-") or "manual"


class BackupManager:
    def __init__(
        self,
        backup_dir: Path | str = BACKUP_DIR,
        *,
        max_backups: int = MAX_BACKUPS,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        logger: SessionLogger | None = None,
    ) -> None:
        self.backup_dir = Path(backup_dir)
        self.max_backups = max(1, max_backups)
        self._now = now
        self._log = logger or get_logger(__name__)

    def create_backup(self, session_path: Path | str, reason: str = "manual") -> BackupResult:
        source = Path(session_path)
        started = time.perf_counter()
        if not source.is_dir():
            return BackupResult(error=f"Session directory does not exist: {source}")

        created = self._now()
        stamp = created.strftime("%Y%m%dT%H%M%S%fZ")
        target = self.backup_dir / f"{source.name}_{stamp}_{_safe_reason(reason)}"

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            copied, total, skipped = copy_tree(source, target)
            metadata = {
                "version": METADATA_VERSION,
                "created": created.isoformat(),
                "reason": reason,
                "source": str(source),
                "session_name": source.name,
                "system": {
                    "platform": platform.platform(),
                    "python": platform.python_version(),
                    "pid": os.getpid(),
                },
                "integrity": {"file_count": copied, "total_bytes": total},
            }
            (target / METADATA_FILE).write_text(json.dumps(metadata, indent=2), encoding="utf-8")
        except OSError as exc:
            self._log.error("Backup failed", session_path=str(source), error=str(exc))
            if target.exists():
                try:
                    remove_path(target)
                except OSError:
                    self._log.warning("Failed to remove partial backup", backup_path=str(target))
            return BackupResult(
                error=str(exc),
                duration_ms=int((time.perf_counter() - started) * 1000),
            )

        self._log.info(
            "Backup created",
            session_path=str(source),
            backup_path=str(target),
            files=copied,
            skipped=len(skipped),
        )
        self._prune(source.name)
        return BackupResult(
            success=True,
            backup_path=target,
            files_copied=copied,
            total_bytes=total,
            skipped_files=skipped,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

    def _read_info(self, path: Path) -> BackupInfo | None:
        meta_path = path / METADATA_FILE
        if not meta_path.is_file():
            return None
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            self._log.warning("Unreadable backup metadata", backup_path=str(path))
            return None
        integrity = data.get("integrity") or {}
        return BackupInfo(
            name=path.name,
            path=path,
            created_at=data.get("created"),
            reason=data.get("reason"),
            source=data.get("source"),
            session_name=data.get("session_name"),
            file_count=integrity.get("file_count", 0),
            total_bytes=integrity.get("total_bytes", 0),
        )

    def list_backups(self, session_name: str | None = None) -> list[BackupInfo]:
        """Known backups, newest first, optionally for one session name."""
        if not self.backup_dir.is_dir():
            return []
        infos = []
        for entry in self.backup_dir.iterdir():
            if not entry.is_dir():
                continue
            info = self._read_info(entry)
            if info is None:
                continue
            if session_name is not None and info.session_name != session_name:
                continue
            infos.append(info)
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(infos, key=lambda i: (i.created_at or epoch, i.name), reverse=True)

    def _prune(self, session_name: str) -> None:
        for info in self.list_backups(session_name)[self.max_backups:]:
            self.delete_backup(info.path)

    def delete_backup(self, backup_path: Path | str) -> bool:
        path = Path(backup_path)
        if not path.is_dir() or path.parent.resolve() != self.backup_dir.resolve():
            return False
        try:
            remove_path(path)
        except OSError as exc:
            self._log.warning("Failed to delete backup", backup_path=str(path), error=str(exc))
            return False
        self._log.info("Backup deleted", backup_path=str(path))
        return True

    def restore_from_backup(
        self,
        backup_path: Path | str,
        target_path: Path | str,
        *,
        overwrite: bool = False,
    ) -> BackupResult:
        source = Path(backup_path)
        target = Path(target_path)
        started = time.perf_counter()
        if self._read_info(source) is None:
            return BackupResult(error=f"Not a backup directory: {source}")
        if target.exists():
            if not overwrite:
                return BackupResult(error=f"Target already exists: {target}")
            remove_path(target)

        try:
            copied, total, skipped = copy_tree(source, target, skip={METADATA_FILE})
        except OSError as exc:
            self._log.error("Restore failed", backup_path=str(source), error=str(exc))
            if target.exists():
                remove_path(target)
            return BackupResult(error=str(exc), duration_ms=int((time.perf_counter() - started) * 1000))

        self._log.info("Backup restored", backup_path=str(source), target_path=str(target), files=copied)
        return BackupResult(
            success=True,
            backup_path=source,
            files_copied=copied,
            total_bytes=total,
            skipped_files=skipped,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

    def restore_latest(self, target_path: Path | str, *, overwrite: bool = True) -> BackupResult:
        target = Path(target_path)
        backups = self.list_backups(target.name)
        if not backups:
            return BackupResult(error=f"No backups found for {target.name}")
        return self.restore_from_backup(backups[0].path, target, overwrite=overwrite)
