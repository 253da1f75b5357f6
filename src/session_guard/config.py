"""Paths and default settings."""

from __future__ import annotations

import os
from pathlib import Path

from platformdirs import user_data_dir
from pydantic import BaseModel

APP_NAME = "session-guard"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


DATA_DIR = Path(os.getenv("SG_DATA_DIR") or user_data_dir(APP_NAME))
SESSIONS_DIR = Path(os.getenv("SG_SESSION_BASE_DIR") or DATA_DIR / "sessions")
BACKUP_DIR = Path(os.getenv("SG_BACKUP_DIR") or DATA_DIR / "session_backups")
LOG_DIR = DATA_DIR / "logs"
LOG_FILE = LOG_DIR / "session-guard.log"
LOG_RETENTION_DAYS = max(1, _env_int("SG_LOG_RETENTION_DAYS", 14))

# Session naming: <base>/<prefix>_<instance id>
SESSION_PREFIX = os.getenv("SG_SESSION_PREFIX", ".auth")
LOCK_FILE_NAME = f"{SESSION_PREFIX}.lock"
SHARED_INSTANCE_ID = "shared"

# Lock acquisition (seconds)
LOCK_TIMEOUT = max(1.0, _env_float("SG_LOCK_TIMEOUT_SECONDS", 30.0))
LOCK_RETRY_DELAY = max(0.0, _env_float("SG_LOCK_RETRY_DELAY_SECONDS", 1.0))
LOCK_RETRIES = max(0, _env_int("SG_LOCK_RETRIES", 5))

# Recovery / backups
MAX_RECOVERY_SECONDS = max(1.0, _env_float("SG_MAX_RECOVERY_SECONDS", 30.0))
MAX_BACKUPS = max(1, _env_int("SG_MAX_BACKUPS", 10))
INDEXEDDB_ORIGIN = os.getenv("SG_INDEXEDDB_ORIGIN", "").strip()

# Branch detection
BRANCH_CACHE_TTL = 30.0
GIT_COMMAND_TIMEOUT = 5.0

# Browser client
LOGIN_URL = os.getenv("SG_LOGIN_URL", "").strip()
LOGIN_SUCCESS_MARKERS = tuple(
    part.strip() for part in os.getenv("SG_LOGIN_SUCCESS_MARKERS", "").split(",") if part.strip()
)
LOGIN_TIMEOUT_SECONDS = max(10.0, _env_float("SG_LOGIN_TIMEOUT_SECONDS", 180.0))

# Status server
HOST = os.getenv("SG_HOST", "127.0.0.1")
PORT = _env_int("SG_PORT", 8765)


class StrategySettings(BaseModel):
    """Session partitioning switches read from the environment."""

    team_collaboration: bool = False
    branch_pattern_strategy: bool = False
    branch_sessions: bool = False
    shared_session: bool = True
    team_session_prefix: str = "team"
    branch_detection: bool = True
    auto_migrate: bool = True
    migration_backup: bool = True
    consolidate_sessions: bool = True


def load_strategy_settings(environ: dict[str, str] | None = None) -> StrategySettings:
    """Build :class:`StrategySettings` from ``SG_*`` variables.

    ``environ`` defaults to ``os.environ``; tests pass a plain dict.
    """
    env = os.environ if environ is None else environ

    def flag(name: str, default: bool) -> bool:
        raw = env.get(name)
        if raw is None:
            return default
        return raw.strip().lower() in {"1", "true", "yes", "on"}

    prefix = (env.get("SG_TEAM_SESSION_PREFIX") or "team").strip() or "team"
    return StrategySettings(
        team_collaboration=flag("SG_TEAM_COLLABORATION", False),
        branch_pattern_strategy=flag("SG_BRANCH_PATTERN_STRATEGY", False),
        branch_sessions=flag("SG_BRANCH_SESSIONS", False),
        shared_session=flag("SG_SHARED_SESSION", True),
        team_session_prefix=prefix,
        branch_detection=flag("SG_BRANCH_DETECTION", True),
        auto_migrate=flag("SG_AUTO_MIGRATE_SESSION", True),
        migration_backup=flag("SG_MIGRATION_BACKUP", True),
        consolidate_sessions=flag("SG_CONSOLIDATE_SESSIONS", True),
    )


def session_path(base_dir: Path | str, instance_id: str) -> Path:
    return Path(base_dir) / f"{SESSION_PREFIX}_{instance_id}"


def lock_path(base_dir: Path | str) -> Path:
    return Path(base_dir) / LOCK_FILE_NAME


def ensure_dirs() -> None:
    """Create required directories on first run."""
    for d in (DATA_DIR, SESSIONS_DIR, BACKUP_DIR, LOG_DIR):
        d.mkdir(parents=True, exist_ok=True)
