"""Startup and shutdown sequence for one worker's browser session.

``start()`` resolves the identity, validates the session read-only, takes
the base directory lock, and only then repairs, migrates or consolidates
session data. The returned :class:`SessionLease` is what the browser client
needs: the session path to launch with, plus the reports of what happened.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Callable, Mapping

from pydantic import BaseModel

from .config import SESSIONS_DIR, StrategySettings, load_strategy_settings, lock_path, session_path
from .errors import ConfigurationError, CorruptionError, SessionIOError
from .events import EventBus, SessionEvent
from .identity.resolver import IdentityResolver, ResolveOptions
from .lock_file import LockFileManager
from .log import SessionLogger, get_logger
from .models import (
    ConsolidationResult,
    InstanceIdentity,
    LockState,
    MigrationResult,
    RecoveryOutcome,
    SessionStrategy,
    ValidationReport,
)
from .session.backup import BackupManager
from .session.migration import SessionMigrator
from .session.recovery import RecoveryManager
from .session.validation import SessionValidator


class SessionLease(BaseModel):
    identity: InstanceIdentity
    session_path: Path
    lock_path: Path
    validation: ValidationReport
    recovery: RecoveryOutcome | None = None
    migration: MigrationResult | None = None
    consolidation: ConsolidationResult | None = None


class SessionCoordinator:
    def __init__(
        self,
        base_dir: Path | str | None = None,
        *,
        options: ResolveOptions | None = None,
        environ: Mapping[str, str] | None = None,
        settings: StrategySettings | None = None,
        resolver: IdentityResolver | None = None,
        validator: SessionValidator | None = None,
        backups: BackupManager | None = None,
        events: EventBus | None = None,
        lock_factory: Callable[..., LockFileManager] = LockFileManager,
        auto_backup: bool = True,
        logger: SessionLogger | None = None,
    ) -> None:
        self.base_dir = Path(base_dir) if base_dir is not None else SESSIONS_DIR
        self.options = options or ResolveOptions()
        self._log = logger or get_logger(__name__)
        env = dict(os.environ if environ is None else environ)
        self.settings = settings or load_strategy_settings(env)
        self.resolver = resolver or IdentityResolver(environ=env, logger=self._log)
        self.validator = validator or SessionValidator(logger=self._log)
        self.backups = backups if backups is not None else BackupManager(logger=self._log)
        self.events = events or EventBus(logger=self._log)
        self.recovery = RecoveryManager(validator=self.validator, backups=self.backups, logger=self._log)
        self.migrator = SessionMigrator(
            self.base_dir,
            resolver=self.resolver,
            validator=self.validator,
            backups=self.backups,
            logger=self._log,
        )
        self.auto_backup = auto_backup
        self._lock_factory = lock_factory
        self.lock: LockFileManager | None = None
        self.lease: SessionLease | None = None
        self._unsubscribe: list[Callable[[], None]] = []

    async def start(self) -> SessionLease:
        """Run the startup sequence and hold the lock until :meth:`stop`.

        Raises :class:`ConfigurationError` when the base directory cannot be
        used and :class:`ContentionError` when another live worker owns it.
        """
        try:
            await asyncio.to_thread(self.base_dir.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigurationError(f"Session base directory is not usable: {self.base_dir} ({exc})") from exc

        identity = self.resolver.resolve(self.options)
        path = session_path(self.base_dir, identity.id)
        self._log.info(
            "Starting session",
            strategy=identity.strategy.value,
            instance_id=identity.id,
            source=identity.source.value,
            session_path=str(path),
        )

        try:
            validation = await asyncio.to_thread(self.validator.ensure_valid, path)
        except CorruptionError as exc:
            self._log.warning("Session failed validation, recovery scheduled", session_path=str(path), issues=exc.issues)
            validation = exc.report

        self.lock = self._lock_factory(lock_path(self.base_dir), instance_id=identity.id, logger=self._log)
        await self.lock.acquire_lock()

        lease = SessionLease(
            identity=identity,
            session_path=path,
            lock_path=self.lock.lock_path,
            validation=validation,
        )
        try:
            await self._prepare(lease)
        except BaseException:
            await self.lock.release_lock()
            raise

        self.lease = lease
        self._unsubscribe = [
            self.events.subscribe(SessionEvent.ready, self._on_ready),
            self.events.subscribe(SessionEvent.disconnected, self._on_disconnected),
            self.events.subscribe(SessionEvent.auth_failure, self._on_auth_failure),
        ]
        return lease

    async def _prepare(self, lease: SessionLease) -> None:
        changed = False
        if lease.validation.session_exists and not lease.validation.is_valid:
            lease.recovery = await self.recovery.recover(
                lease.session_path,
                auto_backup_before_recovery=self.auto_backup,
            )
            changed = True

        if lease.identity.strategy is SessionStrategy.shared and self.settings.consolidate_sessions:
            lease.consolidation = await self.migrator.consolidate(self.base_dir, lease.identity.id)
            changed = changed or lease.consolidation.consolidated
        elif self.settings.auto_migrate and not lease.session_path.exists():
            try:
                lease.migration = await self.migrator.migrate(
                    options=self.options,
                    current=lease.identity,
                    backup=self.settings.migration_backup,
                )
            except SessionIOError as exc:
                self._log.error("Session migration failed, continuing without it", error=str(exc))
                lease.migration = MigrationResult(
                    new_identity=lease.identity,
                    target_path=lease.session_path,
                    error=str(exc),
                )
            changed = changed or lease.migration.migrated

        if changed:
            lease.validation = await asyncio.to_thread(self.validator.validate, lease.session_path)

    async def stop(self) -> bool:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        if self.lock is None or self.lock.state is not LockState.locked:
            return True
        released = await self.lock.release_lock()
        self._log.info("Session stopped", released=released)
        return released

    async def _on_ready(self, event: SessionEvent, payload: dict) -> None:
        if self.lease is None:
            return
        healthy = await asyncio.to_thread(self.validator.quick_validate, self.lease.session_path)
        if healthy:
            self._log.info("Session ready", session_path=str(self.lease.session_path))
        else:
            self._log.warning("Session ready but profile skeleton is missing", session_path=str(self.lease.session_path))

    async def _on_auth_failure(self, event: SessionEvent, payload: dict) -> None:
        self._log.warning("Authentication failed", reason=payload.get("reason"))

    async def _on_disconnected(self, event: SessionEvent, payload: dict) -> None:
        self._log.info("Client disconnected, releasing session", reason=payload.get("reason"))
        await self.stop()
