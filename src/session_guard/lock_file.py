"""Cross-process lock file for a session base directory.

Only one worker may own a persisted browser session at a time. Ownership is
recorded in a small JSON file next to the session directories; a lock whose
owner process has died is removed and taken over. Older deployments wrote a
bare PID instead of JSON; both shapes are read through ``parse_lock_text``.

Acquisition is read-then-write with a liveness re-check, which narrows but
does not close the window where two workers race on a freshly dead lock.
The record is written to a staging file and hard-linked into place, so the
lock never appears half-written and the loser of that race sees contention
instead of overwriting the winner.
"""

from __future__ import annotations

import asyncio
import json
import os
import platform
import sys
import time
from pathlib import Path
from typing import Awaitable, Callable

from pydantic import ValidationError

from .config import LOCK_RETRIES, LOCK_RETRY_DELAY, LOCK_TIMEOUT
from .errors import ContentionError
from .log import SessionLogger, get_logger
from .models import LegacyLockRecord, LockInfo, LockRecord, LockState, StructuredLockRecord

ProcessProbe = Callable[[int], bool]


def pid_running(pid: int) -> bool:
    """Signal-0 liveness probe. Permission denied still means alive."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def parse_lock_text(text: str, mtime_ms: int) -> LockRecord | None:
    """Parse lock file contents once into a legacy or structured record."""
    stripped = text.strip()
    if not stripped:
        return None
    if not stripped.startswith("{"):
        try:
            return LegacyLockRecord(pid=int(stripped), timestamp=mtime_ms)
        except ValueError:
            return None
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    try:
        return StructuredLockRecord.model_validate(data)
    except ValidationError:
        return None


class LockFileManager:
    """Owns one lock file path for the current process."""

    def __init__(
        self,
        lock_path: Path | str,
        *,
        instance_id: str | None = None,
        timeout: float = LOCK_TIMEOUT,
        retry_delay: float = LOCK_RETRY_DELAY,
        retries: int = LOCK_RETRIES,
        probe: ProcessProbe = pid_running,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        pid: int | None = None,
        logger: SessionLogger | None = None,
    ) -> None:
        self.lock_path = Path(lock_path)
        self.instance_id = instance_id
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.retries = retries
        self.pid = os.getpid() if pid is None else pid
        self._probe = probe
        self._clock = clock
        self._sleep = sleep
        self._log = logger or get_logger(__name__)
        self._state = LockState.unlocked

    @property
    def state(self) -> LockState:
        return self._state

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def read_record(self) -> LockRecord | None:
        try:
            text = self.lock_path.read_text(encoding="utf-8")
            mtime_ms = int(self.lock_path.stat().st_mtime * 1000)
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            self._log.warning("Failed to read lock file", lock_file=str(self.lock_path), error=str(exc))
            return None
        return parse_lock_text(text, mtime_ms)

    def _is_stale(self, record: LockRecord, timeout: float) -> bool:
        return self._now_ms() - record.timestamp > timeout * 1000

    async def acquire_lock(self, *, timeout: float | None = None, retries: int | None = None) -> bool:
        """Take the lock, retrying on contention.

        Raises :class:`ContentionError` once every attempt found a live
        owner. Filesystem errors while writing the lock propagate.
        """
        timeout = self.timeout if timeout is None else timeout
        retries = self.retries if retries is None else max(0, retries)
        self._state = LockState.acquiring
        last_error: ContentionError | None = None

        for attempt in range(retries + 1):
            try:
                await asyncio.to_thread(self._try_acquire, timeout)
            except ContentionError as exc:
                last_error = exc
                self._log.warning(
                    "Lock acquisition attempt failed",
                    lock_file=str(self.lock_path),
                    attempt=attempt + 1,
                    error=str(exc),
                )
                if attempt < retries:
                    await self._sleep(self.retry_delay)
                continue
            except OSError:
                self._state = LockState.unlocked
                raise

            self._state = LockState.locked
            self._log.info(
                "Lock acquired",
                lock_file=str(self.lock_path),
                pid=self.pid,
                attempt=attempt + 1,
            )
            return True

        self._state = LockState.unlocked
        raise ContentionError(
            f"Failed to acquire lock after {retries + 1} attempts: {last_error}",
            owner_pid=last_error.owner_pid if last_error else None,
        )

    def _try_acquire(self, timeout: float) -> None:
        overwrite = False
        if self.lock_path.exists():
            record = self.read_record()
            if record is None:
                self._log.warning("Removing unreadable lock file", lock_file=str(self.lock_path))
                self.lock_path.unlink(missing_ok=True)
            elif record.pid == self.pid:
                overwrite = True
            elif self._probe(record.pid):
                if not self._is_stale(record, timeout):
                    raise ContentionError(f"Another instance is running (PID: {record.pid})", owner_pid=record.pid)
                self._log.warning(
                    "Stale lock detected, attempting to remove",
                    lock_file=str(self.lock_path),
                    stale_pid=record.pid,
                    lock_age_ms=self._now_ms() - record.timestamp,
                )
                self._remove_stale_lock(record.pid)
            else:
                self._log.info("Removing lock from dead process", lock_file=str(self.lock_path), dead_pid=record.pid)
                self.lock_path.unlink(missing_ok=True)
        self._write_record(overwrite=overwrite)

    def _remove_stale_lock(self, stale_pid: int) -> None:
        if self._probe(stale_pid):
            raise ContentionError(f"Cannot remove lock: process {stale_pid} is still running", owner_pid=stale_pid)
        self.lock_path.unlink(missing_ok=True)
        self._log.info("Stale lock removed", lock_file=str(self.lock_path), stale_pid=stale_pid)

    def _write_record(self, *, overwrite: bool = False) -> None:
        record = StructuredLockRecord(
            pid=self.pid,
            timestamp=self._now_ms(),
            instance_id=self.instance_id,
            platform=sys.platform,
            runtime_version=f"{platform.python_implementation()} {platform.python_version()}",
        )
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        staging = self.lock_path.with_name(f"{self.lock_path.name}.{self.pid}.tmp")
        try:
            with staging.open("w", encoding="utf-8") as fh:
                json.dump(record.to_json_dict(), fh, indent=2)
            if overwrite:
                os.replace(staging, self.lock_path)
            else:
                os.link(staging, self.lock_path)
        except FileExistsError:
            raise ContentionError("Lock file was created by another process during acquisition") from None
        finally:
            staging.unlink(missing_ok=True)

    async def release_lock(self) -> bool:
        """Remove the lock if this process owns it; ``False`` otherwise."""
        self._state = LockState.releasing
        try:
            if not self.lock_path.exists():
                self._log.info("No lock file to release", lock_file=str(self.lock_path))
                return True
            record = self.read_record()
            if record is not None and record.pid == self.pid:
                await asyncio.to_thread(self.lock_path.unlink, True)
                self._log.info("Lock released", lock_file=str(self.lock_path), pid=self.pid)
                return True
            self._log.warning(
                "Cannot release lock: not owned by this process",
                lock_file=str(self.lock_path),
                current_pid=self.pid,
                lock_pid=record.pid if record else None,
            )
            return False
        except OSError as exc:
            self._log.error("Error releasing lock", lock_file=str(self.lock_path), error=str(exc))
            return False
        finally:
            self._state = LockState.unlocked

    def get_lock_info(self) -> LockInfo | None:
        """Read-only snapshot of the current lock; ``None`` when absent."""
        record = self.read_record()
        if record is None:
            return None
        return LockInfo(
            path=self.lock_path,
            record=record,
            is_running=self._probe(record.pid),
            is_stale=self._is_stale(record, self.timeout),
            age_ms=self._now_ms() - record.timestamp,
        )
