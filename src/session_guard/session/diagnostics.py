"""Read-only health report over every session under a base directory."""

from __future__ import annotations

import os
import platform
import sys
import time
from datetime import timezone
from pathlib import Path
from typing import Callable, Mapping

from ..config import lock_path
from ..identity.git import CI_BRANCH_VARIABLES, repository_info
from ..identity.resolver import IdentityResolver
from ..lock_file import LockFileManager
from ..log import SessionLogger, get_logger
from ..models import DiagnosticReport, SessionDiagnostic
from .validation import SessionValidator, discover_session_directories, format_bytes

OLD_SESSION_DAYS = 30
VERY_OLD_SESSION_DAYS = 90
MIN_SESSION_BYTES = 1024
MAX_SESSIONS = 3

_ENV_PREFIXES = ("SG_",)
_ENV_NAMES = (
    "PM2_APP_NAME",
    "PM2_INSTANCE_ID",
    "NODE_APP_INSTANCE",
    "pm_id",
    "SUPERVISOR_PROCESS_NAME",
    *CI_BRANCH_VARIABLES,
)
_SECRET_MARKERS = ("TOKEN", "SECRET", "PASSWORD", "KEY")
MASKED = "***MASKED***"


def execution_mode(environ: Mapping[str, str]) -> str:
    if "PYTEST_CURRENT_TEST" in environ:
        return "test"
    if any(name in environ for name in ("pm_id", "PM2_APP_NAME", "SUPERVISOR_PROCESS_NAME", "SG_INSTANCE_INDEX")):
        return "supervisor"
    return "direct"


def relevant_environment(environ: Mapping[str, str]) -> dict[str, str | None]:
    """Session-related variables, with secret-looking values masked."""
    selected: dict[str, str | None] = {}
    for name in sorted(environ):
        if not (name.startswith(_ENV_PREFIXES) or name in _ENV_NAMES):
            continue
        if any(marker in name.upper() for marker in _SECRET_MARKERS):
            selected[name] = MASKED
        else:
            selected[name] = environ[name]
    return selected


class DiagnosticsReporter:
    def __init__(
        self,
        base_dir: Path | str,
        *,
        validator: SessionValidator | None = None,
        resolver: IdentityResolver | None = None,
        lock: LockFileManager | None = None,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
        logger: SessionLogger | None = None,
    ) -> None:
        self.base_dir = Path(base_dir)
        self._log = logger or get_logger(__name__)
        self._environ = dict(os.environ if environ is None else environ)
        self.validator = validator or SessionValidator(logger=self._log)
        self.resolver = resolver or IdentityResolver(environ=self._environ, logger=self._log)
        self.lock = lock or LockFileManager(lock_path(self.base_dir), logger=self._log)
        self._clock = clock

    def generate_report(self, *, include_repository: bool = True) -> DiagnosticReport:
        started = time.perf_counter()
        now = self._clock()
        report = DiagnosticReport(base_dir=self.base_dir)

        report.identity = self.resolver.resolve()
        report.environment = relevant_environment(self._environ)
        report.system = {
            "python": platform.python_version(),
            "implementation": platform.python_implementation(),
            "platform": sys.platform,
            "machine": platform.machine(),
            "pid": os.getpid(),
            "ppid": os.getppid(),
            "execution_mode": execution_mode(self._environ),
        }
        try:
            report.lock = self.lock.get_lock_info()
        except OSError as exc:
            report.errors.append(f"Could not read lock file: {exc}")
        if include_repository:
            report.repository = repository_info(Path.cwd())

        for path in discover_session_directories(self.base_dir):
            try:
                directory = self.validator.describe(path)
                validation = self.validator.validate(path)
            except OSError as exc:
                report.errors.append(f"{path}: {exc}")
                continue
            age_days = None
            if directory.last_modified_at is not None:
                age_days = round((now - directory.last_modified_at.timestamp()) / 86400, 1)
            report.sessions.append(SessionDiagnostic(directory=directory, validation=validation, age_days=age_days))

        report.total_sessions = len(report.sessions)
        report.valid_sessions = sum(1 for s in report.sessions if s.validation.is_valid)
        if report.total_sessions:
            report.health_score = round(report.valid_sessions / report.total_sessions * 100)

        report.recommendations = self._recommendations(report)
        report.warnings = self._warnings(report)
        report.duration_ms = int((time.perf_counter() - started) * 1000)
        self._log.info(
            "Diagnostic report generated",
            base_dir=str(self.base_dir),
            sessions=report.total_sessions,
            health_score=report.health_score,
        )
        return report

    @staticmethod
    def _recommendations(report: DiagnosticReport) -> list[str]:
        recommendations = []
        if not report.sessions:
            recommendations.append("No session directories found - the next start will require authentication")
            return recommendations

        if report.health_score < 50:
            recommendations.append("Consider cleaning up corrupted sessions and re-authenticating")
        elif report.health_score < 80:
            recommendations.append("Some sessions may need attention - review validation details")

        old = [s for s in report.sessions if s.age_days is not None and s.age_days > OLD_SESSION_DAYS]
        if old:
            recommendations.append(f"{len(old)} session(s) are older than {OLD_SESSION_DAYS} days - consider cleanup")
        if report.total_sessions > MAX_SESSIONS:
            recommendations.append("Multiple session directories detected - consider consolidating to reduce confusion")
        if report.identity is not None and not any(
            s.directory.instance_id == report.identity.id for s in report.sessions
        ):
            recommendations.append(f"No session found for the current instance id ({report.identity.id})")
        if report.lock is not None and not report.lock.is_running:
            recommendations.append(f"Lock file is held by a dead process (PID {report.lock.owner_pid}) and will be reclaimed")
        return recommendations

    @staticmethod
    def _warnings(report: DiagnosticReport) -> list[str]:
        warnings = []
        corrupted = [s for s in report.sessions if s.validation.session_exists and not s.validation.is_valid]
        if corrupted:
            warnings.append(f"{len(corrupted)} corrupted session(s) detected")
        very_old = [s for s in report.sessions if s.age_days is not None and s.age_days > VERY_OLD_SESSION_DAYS]
        if very_old:
            warnings.append(f"{len(very_old)} session(s) are older than {VERY_OLD_SESSION_DAYS} days")
        tiny = [s for s in report.sessions if s.directory.size_bytes < MIN_SESSION_BYTES]
        if tiny:
            warnings.append(f"{len(tiny)} session(s) appear to be empty or minimal")
        return warnings


def format_report(report: DiagnosticReport) -> str:
    rule = "=" * 60
    invalid = report.total_sessions - report.valid_sessions
    lines = [
        rule,
        "Session Diagnostic Report",
        rule,
        f"Generated: {report.generated_at.astimezone(timezone.utc).isoformat()}",
        f"Duration: {report.duration_ms}ms",
        f"Base directory: {report.base_dir}",
        "",
        "SUMMARY:",
        f"  Total Sessions: {report.total_sessions}",
        f"  Valid Sessions: {report.valid_sessions}",
        f"  Invalid Sessions: {invalid}",
        f"  Health Score: {report.health_score}%",
        "",
    ]

    if report.identity is not None:
        lines += [
            "IDENTITY:",
            f"  Strategy: {report.identity.strategy.value}",
            f"  Instance ID: {report.identity.id}",
            f"  Source: {report.identity.source.value}",
            "",
        ]

    lines += [
        "ENVIRONMENT:",
        f"  Execution Mode: {report.system.get('execution_mode')}",
        f"  Python: {report.system.get('python')}",
        f"  Platform: {report.system.get('platform')}",
    ]
    if report.lock is not None:
        state = "running" if report.lock.is_running else "dead"
        stale = ", stale" if report.lock.is_stale else ""
        lines.append(f"  Lock: PID {report.lock.owner_pid} ({state}{stale}, age {report.lock.age_ms}ms)")
    else:
        lines.append("  Lock: none")
    lines.append("")

    if report.sessions:
        lines.append("SESSIONS:")
        for session in report.sessions:
            lines.append(f"  {session.directory.path}:")
            lines.append(f"    Valid: {'Yes' if session.validation.is_valid else 'No'}")
            lines.append(f"    Size: {format_bytes(session.directory.size_bytes)}")
            age = "unknown" if session.age_days is None else f"{session.age_days} days"
            lines.append(f"    Age: {age}")
            for issue in session.validation.issues:
                lines.append(f"    Issue: {issue.message}")
        lines.append("")

    for title, entries in (
        ("WARNINGS", report.warnings),
        ("ERRORS", report.errors),
        ("RECOMMENDATIONS", report.recommendations),
    ):
        if entries:
            lines.append(f"{title}:")
            lines.extend(f"  - {entry}" for entry in entries)
            lines.append("")

    lines.append(rule)
    return "\n".join(lines)

