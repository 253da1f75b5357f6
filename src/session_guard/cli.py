"""Operator CLI for inspecting and repairing session directories.

Examples:
  session-guard identity
  session-guard lock
  session-guard validate --instance-id feature_login
  session-guard consolidate --target-id shared
  session-guard migrate --strategy branch-specific
  session-guard recover --max-time 20
  session-guard backup list
  session-guard report --json
  session-guard start --login
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

from .config import LOCK_RETRIES, MAX_RECOVERY_SECONDS, SESSIONS_DIR, ensure_dirs, lock_path, session_path
from .errors import ConfigurationError, ContentionError
from .identity.resolver import IdentityResolver, ResolveOptions
from .lock_file import LockFileManager
from .models import RecoveryLevel, SessionStrategy
from .session.backup import BackupManager
from .session.diagnostics import DiagnosticsReporter, format_report
from .session.migration import SessionMigrator
from .session.recovery import RecoveryManager
from .session.validation import SessionValidator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIGURATION = 2
EXIT_CONTENTION = 3


def _print_json(payload) -> None:
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json")
    print(json.dumps(payload, indent=2, default=str))


def _target_path(base_dir: Path, instance_id: str | None, resolver: IdentityResolver) -> Path:
    return session_path(base_dir, instance_id or resolver.resolve().id)


def cmd_identity(args: argparse.Namespace) -> int:
    resolver = IdentityResolver()
    options = ResolveOptions(strategy=args.strategy, use_shared_session=not args.per_instance)
    identity = resolver.resolve(options)
    if args.json:
        _print_json({**identity.model_dump(mode="json"), "session_path": str(session_path(args.base_dir, identity.id))})
        return EXIT_OK
    print(f"Strategy:  {identity.strategy.value}")
    print(f"ID:        {identity.id}")
    print(f"Source:    {identity.source.value}")
    if identity.branch:
        print(f"Branch:    {identity.branch}")
    print(f"Session:   {session_path(args.base_dir, identity.id)}")
    return EXIT_OK


def cmd_lock(args: argparse.Namespace) -> int:
    info = LockFileManager(lock_path(args.base_dir)).get_lock_info()
    if args.json:
        _print_json(info.model_dump(mode="json") if info else None)
        return EXIT_OK
    if info is None:
        print("No lock held.")
        return EXIT_OK
    print(f"Lock:      {info.path}")
    print(f"PID:       {info.owner_pid} ({'running' if info.is_running else 'dead'})")
    print(f"Age:       {info.age_ms}ms{' (stale)' if info.is_stale else ''}")
    print(f"Format:    {'legacy' if info.record.legacy_format else 'structured'}")
    return EXIT_OK


def cmd_validate(args: argparse.Namespace) -> int:
    validator = SessionValidator()
    path = _target_path(args.base_dir, args.instance_id, IdentityResolver())
    if args.quick:
        ok = validator.quick_validate(path)
        print(f"{path}: {'ok' if ok else 'missing profile skeleton'}")
        return EXIT_OK if ok else EXIT_FAILURE

    report = validator.validate(path)
    if args.json:
        _print_json(report)
    else:
        print(f"Session:   {path}")
        print(f"Valid:     {'yes' if report.is_valid else 'no'}")
        for issue in report.issues:
            print(f"  issue:   {issue.message}")
        for warning in report.warnings:
            print(f"  warning: {warning.message}")
    return EXIT_OK if report.is_valid else EXIT_FAILURE


async def _with_lock(base_dir: Path, instance_id: str, coro_factory):
    """Run a mutating operation while holding the base directory lock."""
    lock = LockFileManager(lock_path(base_dir), instance_id=instance_id, retries=min(LOCK_RETRIES, 1))
    await lock.acquire_lock()
    try:
        return await coro_factory()
    finally:
        await lock.release_lock()


def cmd_consolidate(args: argparse.Namespace) -> int:
    resolver = IdentityResolver()
    target_id = args.target_id or resolver.resolve().id
    migrator = SessionMigrator(args.base_dir, resolver=resolver)
    result = asyncio.run(_with_lock(args.base_dir, target_id, lambda: migrator.consolidate(args.base_dir, target_id)))
    _print_json(result)
    return EXIT_OK if not result.errors else EXIT_FAILURE


def cmd_migrate(args: argparse.Namespace) -> int:
    resolver = IdentityResolver()
    migrator = SessionMigrator(args.base_dir, resolver=resolver, backups=BackupManager())
    target = resolver.resolve(ResolveOptions(strategy=args.strategy))
    result = asyncio.run(
        _with_lock(
            args.base_dir,
            target.id,
            lambda: migrator.migrate(args.strategy, backup=not args.no_backup, current=resolver.resolve()),
        )
    )
    _print_json(result)
    return EXIT_OK if result.success else EXIT_FAILURE


def cmd_recover(args: argparse.Namespace) -> int:
    resolver = IdentityResolver()
    instance_id = args.instance_id or resolver.resolve().id
    path = session_path(args.base_dir, instance_id)
    manager = RecoveryManager(backups=BackupManager())
    outcome = asyncio.run(
        _with_lock(
            args.base_dir,
            instance_id,
            lambda: manager.recover(
                path,
                auto_backup_before_recovery=not args.no_backup,
                max_recovery_time=args.max_time,
                force_level=args.level,
            ),
        )
    )
    _print_json(outcome)
    return EXIT_OK if outcome.success else EXIT_FAILURE


def cmd_cleanup(args: argparse.Namespace) -> int:
    resolver = IdentityResolver()
    current_id = resolver.resolve().id
    migrator = SessionMigrator(args.base_dir, resolver=resolver, backups=BackupManager())
    result = asyncio.run(
        _with_lock(
            args.base_dir,
            current_id,
            lambda: migrator.cleanup_old_sessions(
                current_id=current_id,
                max_age=args.max_age_days * 86400,
                create_backup=not args.no_backup,
            ),
        )
    )
    _print_json(result)
    return EXIT_OK if not result.errors else EXIT_FAILURE


def cmd_backup(args: argparse.Namespace) -> int:
    backups = BackupManager()
    if args.backup_command == "list":
        infos = backups.list_backups(args.session_name)
        if not infos:
            print("No backups found.")
        for info in infos:
            print(f"{info.name}  reason={info.reason}  files={info.file_count}  created={info.created_at}")
        return EXIT_OK

    if args.backup_command == "create":
        path = _target_path(args.base_dir, args.instance_id, IdentityResolver())
        result = backups.create_backup(path, args.reason)
    elif args.backup_command == "restore":
        path = _target_path(args.base_dir, args.instance_id, IdentityResolver())
        if args.name:
            result = backups.restore_from_backup(backups.backup_dir / args.name, path, overwrite=args.overwrite)
        else:
            result = backups.restore_latest(path, overwrite=args.overwrite)
    else:
        deleted = backups.delete_backup(backups.backup_dir / args.name)
        print("Deleted." if deleted else "No such backup.")
        return EXIT_OK if deleted else EXIT_FAILURE

    _print_json(result)
    return EXIT_OK if result.success else EXIT_FAILURE


def cmd_report(args: argparse.Namespace) -> int:
    report = DiagnosticsReporter(args.base_dir).generate_report(include_repository=not args.no_git)
    if args.json:
        _print_json(report)
    else:
        print(format_report(report))
    return EXIT_OK


async def _start_async(args: argparse.Namespace) -> int:
    from .auth.session_manager import BrowserSession, SessionStatus
    from .coordinator import SessionCoordinator

    coordinator = SessionCoordinator(
        args.base_dir,
        options=ResolveOptions(strategy=args.strategy, use_shared_session=not args.per_instance),
    )
    lease = await coordinator.start()
    try:
        _print_json(
            {
                "identity": lease.identity.model_dump(mode="json"),
                "session_path": str(lease.session_path),
                "valid": lease.validation.is_valid,
                "recovered": bool(lease.recovery and lease.recovery.performed),
                "migrated": bool(lease.migration and lease.migration.migrated),
                "consolidated": bool(lease.consolidation and lease.consolidation.consolidated),
            }
        )
        if not args.login:
            return EXIT_OK
        browser = BrowserSession(coordinator)
        status = await browser.login()
        print(f"Session: {status.value}")
        return EXIT_OK if status is SessionStatus.connected else EXIT_FAILURE
    finally:
        await coordinator.stop()


def cmd_start(args: argparse.Namespace) -> int:
    return asyncio.run(_start_async(args))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect and repair persisted browser sessions.")
    parser.add_argument(
        "--base-dir",
        type=Path,
        default=SESSIONS_DIR,
        help=f"Directory holding session directories and the lock file (default: {SESSIONS_DIR}).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command")

    strategies = [s.value for s in SessionStrategy]

    identity = sub.add_parser("identity", help="Show the resolved instance identity.")
    identity.add_argument("--strategy", choices=strategies, default=None, help="Override the configured strategy.")
    identity.add_argument(
        "--per-instance",
        action="store_true",
        help="Use a per-worker id instead of the shared default.",
    )
    identity.add_argument("--json", action="store_true", help="Print JSON.")

    lock = sub.add_parser("lock", help="Show the lock file owner.")
    lock.add_argument("--json", action="store_true", help="Print JSON.")

    validate = sub.add_parser("validate", help="Validate a session directory.")
    validate.add_argument("--instance-id", default=None, help="Session id (default: resolved identity).")
    validate.add_argument("--quick", action="store_true", help="Only check the profile skeleton.")
    validate.add_argument("--json", action="store_true", help="Print JSON.")

    consolidate = sub.add_parser("consolidate", help="Merge duplicate session directories.")
    consolidate.add_argument("--target-id", default=None, help="Id to keep (default: resolved identity).")

    migrate = sub.add_parser("migrate", help="Copy the best session to a new strategy's location.")
    migrate.add_argument("--strategy", choices=strategies, required=True, help="Strategy to migrate to.")
    migrate.add_argument("--no-backup", action="store_true", help="Skip the pre-migration backup.")

    recover = sub.add_parser("recover", help="Repair a corrupted session directory.")
    recover.add_argument("--instance-id", default=None, help="Session id (default: resolved identity).")
    recover.add_argument("--no-backup", action="store_true", help="Skip the pre-recovery backup.")
    recover.add_argument(
        "--max-time",
        type=float,
        default=MAX_RECOVERY_SECONDS,
        help="Recovery time budget in seconds.",
    )
    recover.add_argument(
        "--level",
        choices=[level.value for level in RecoveryLevel],
        default=None,
        help="Start at this recovery level instead of the assessed one.",
    )

    cleanup = sub.add_parser("cleanup", help="Remove sessions that have not been used recently.")
    cleanup.add_argument("--max-age-days", type=float, default=7.0, help="Age threshold in days.")
    cleanup.add_argument("--no-backup", action="store_true", help="Delete without backing up first.")

    backup = sub.add_parser("backup", help="Manage session backups.")
    backup_sub = backup.add_subparsers(dest="backup_command", required=True)
    backup_list = backup_sub.add_parser("list", help="List backups.")
    backup_list.add_argument("--session-name", default=None, help="Only backups of this session directory.")
    backup_create = backup_sub.add_parser("create", help="Back up a session.")
    backup_create.add_argument("--instance-id", default=None, help="Session id (default: resolved identity).")
    backup_create.add_argument("--reason", default="manual", help="Label stored with the backup.")
    backup_restore = backup_sub.add_parser("restore", help="Restore a backup.")
    backup_restore.add_argument("--instance-id", default=None, help="Session id (default: resolved identity).")
    backup_restore.add_argument("--name", default=None, help="Backup directory name (default: latest).")
    backup_restore.add_argument("--overwrite", action="store_true", help="Replace an existing session.")
    backup_delete = backup_sub.add_parser("delete", help="Delete a backup.")
    backup_delete.add_argument("--name", required=True, help="Backup directory name.")

    report = sub.add_parser("report", help="Print a diagnostic report.")
    report.add_argument("--json", action="store_true", help="Print JSON.")
    report.add_argument("--no-git", action="store_true", help="Skip repository inspection.")

    start = sub.add_parser("start", help="Run the startup sequence and hold the session until exit.")
    start.add_argument("--strategy", choices=strategies, default=None, help="Override the configured strategy.")
    start.add_argument("--per-instance", action="store_true", help="Use a per-worker id instead of the shared default.")
    start.add_argument("--login", action="store_true", help="Open a browser for interactive login.")

    return parser


COMMANDS = {
    "identity": cmd_identity,
    "lock": cmd_lock,
    "validate": cmd_validate,
    "consolidate": cmd_consolidate,
    "migrate": cmd_migrate,
    "recover": cmd_recover,
    "cleanup": cmd_cleanup,
    "backup": cmd_backup,
    "report": cmd_report,
    "start": cmd_start,
}


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return EXIT_OK

    if getattr(args, "strategy", None):
        args.strategy = SessionStrategy(args.strategy)
    if getattr(args, "level", None):
        args.level = RecoveryLevel(args.level)

    ensure_dirs()
    try:
        return COMMANDS[args.command](args)
    except ConfigurationError as exc:
        logger.error("%s: %s", exc.code, exc)
        return EXIT_CONFIGURATION
    except ContentionError as exc:
        logger.error("%s: %s", exc.code, exc)
        return EXIT_CONTENTION
