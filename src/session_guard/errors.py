"""Exception types raised by session coordination."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ValidationReport


class SessionGuardError(Exception):
    """Base class for session coordination failures."""

    code = "session_error"


class ConfigurationError(SessionGuardError):
    """Required host information is missing or unusable."""

    code = "configuration_error"


class ContentionError(SessionGuardError):
    """A live process owns the lock file."""

    code = "lock_contention"

    def __init__(self, message: str, *, owner_pid: int | None = None) -> None:
        super().__init__(message)
        self.owner_pid = owner_pid


class CorruptionError(SessionGuardError):
    """An existing session directory failed validation."""

    code = "session_corrupted"

    def __init__(
        self,
        message: str,
        *,
        issues: list[str] | None = None,
        report: ValidationReport | None = None,
    ) -> None:
        super().__init__(message)
        self.issues = issues or []
        self.report = report


class SessionIOError(SessionGuardError, OSError):
    """Filesystem failure while copying or moving session data."""

    code = "session_io_error"
