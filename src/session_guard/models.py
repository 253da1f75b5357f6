"""Session coordination data model."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Identity ──────────────────────────────────────────────────────────────

class SessionStrategy(str, Enum):
    shared = "shared"
    branch_specific = "branch-specific"
    pattern_based = "pattern-based"
    team = "team"


class IdentitySource(str, Enum):
    config_override = "config-override"
    env_var = "env-var"
    git_branch = "git-branch"
    process_supervisor = "process-supervisor"
    direct_execution = "direct-execution"
    fallback = "fallback"


class InstanceIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    strategy: SessionStrategy
    id: str
    source: IdentitySource
    branch: str | None = None


class GitBranchInfo(BaseModel):
    is_repository: bool = False
    branch: str | None = None
    method: Literal["command", "head-file", "environment"] | None = None
    detached: bool = False


class RepositoryInfo(BaseModel):
    is_repository: bool = False
    branch: str | None = None
    commit: str | None = None
    remote: str | None = None
    dirty: bool | None = None


# ── Lock records ──────────────────────────────────────────────────────────

class LegacyLockRecord(BaseModel):
    """Bare-PID lock file; ``timestamp`` comes from the file mtime."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["legacy"] = "legacy"
    pid: int
    timestamp: int

    @property
    def legacy_format(self) -> bool:
        return True


class StructuredLockRecord(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: Literal["structured"] = "structured"
    pid: int
    timestamp: int
    instance_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("instanceId", "instance_id"),
        serialization_alias="instanceId",
    )
    platform: str | None = None
    runtime_version: str | None = Field(
        default=None,
        validation_alias=AliasChoices("runtimeVersion", "runtime_version", "nodeVersion"),
        serialization_alias="runtimeVersion",
    )

    @property
    def legacy_format(self) -> bool:
        return False

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude={"kind"})


LockRecord = LegacyLockRecord | StructuredLockRecord


class LockState(str, Enum):
    unlocked = "unlocked"
    acquiring = "acquiring"
    locked = "locked"
    releasing = "releasing"


class LockInfo(BaseModel):
    path: Path
    exists: bool = True
    record: LegacyLockRecord | StructuredLockRecord
    is_running: bool
    is_stale: bool
    age_ms: int

    @property
    def owner_pid(self) -> int:
        return self.record.pid


# ── Validation ────────────────────────────────────────────────────────────

class IssueKind(str, Enum):
    missing_session = "missing_session"
    missing_directory = "missing_directory"
    missing_file = "missing_file"
    missing_auth = "missing_auth"
    empty_directory = "empty_directory"
    empty_file = "empty_file"
    stale_artifact = "stale_artifact"
    optional_missing = "optional_missing"
    small_size = "small_size"
    error = "error"


class ValidationIssue(BaseModel):
    kind: IssueKind
    message: str
    path: str | None = None


class ValidationReport(BaseModel):
    session_path: Path
    is_valid: bool = False
    session_exists: bool = False
    issues: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    required_present: list[str] = Field(default_factory=list)
    required_missing: list[str] = Field(default_factory=list)
    optional_missing: list[str] = Field(default_factory=list)
    auth_present: list[str] = Field(default_factory=list)
    auth_missing: list[str] = Field(default_factory=list)
    size_bytes: int = 0
    file_count: int = 0
    last_modified_at: datetime | None = None
    checked_at: datetime = Field(default_factory=_utcnow)
    duration_ms: int = 0

    @property
    def has_auth_data(self) -> bool:
        return self.session_exists and bool(self.auth_present) and not self.auth_missing

    def issue_kinds(self) -> set[IssueKind]:
        return {issue.kind for issue in self.issues}

    def warning_kinds(self) -> set[IssueKind]:
        return {warning.kind for warning in self.warnings}


class SessionDirectory(BaseModel):
    path: Path
    instance_id: str
    size_bytes: int = 0
    file_count: int = 0
    last_modified_at: datetime | None = None
    structurally_valid: bool = False
    has_auth_data: bool = False


# ── Migration ─────────────────────────────────────────────────────────────

class ConsolidationResult(BaseModel):
    target_path: Path
    source_paths: list[Path] = Field(default_factory=list)
    chosen_source: Path | None = None
    backup_path: Path | None = None
    preserved_count: int = 0
    removed_paths: list[Path] = Field(default_factory=list)
    consolidated: bool = False
    already_consolidated: bool = False
    errors: list[str] = Field(default_factory=list)


class MigrationResult(BaseModel):
    success: bool = False
    migrated: bool = False
    already_migrated: bool = False
    old_identity: InstanceIdentity | None = None
    new_identity: InstanceIdentity | None = None
    source_path: Path | None = None
    target_path: Path | None = None
    backup_path: Path | None = None
    validation: ValidationReport | None = None
    error: str | None = None


class CleanupResult(BaseModel):
    removed_paths: list[Path] = Field(default_factory=list)
    backup_paths: list[Path] = Field(default_factory=list)
    kept_paths: list[Path] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


# ── Recovery ──────────────────────────────────────────────────────────────

class Severity(str, Enum):
    none = "none"
    minor = "minor"
    moderate = "moderate"
    major = "major"
    critical = "critical"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)


class RecoveryLevel(str, Enum):
    clear_cache = "clear_cache"
    reset_browser_state = "reset_browser_state"
    partial_reset = "partial_reset"
    complete_reset = "complete_reset"

    @property
    def destructive(self) -> bool:
        return self in (RecoveryLevel.partial_reset, RecoveryLevel.complete_reset)


class RecoveryOutcome(BaseModel):
    session_path: Path
    performed: bool = False
    success: bool = False
    partial: bool = False
    severity: Severity = Severity.none
    level_applied: RecoveryLevel | None = None
    levels_attempted: list[RecoveryLevel] = Field(default_factory=list)
    backup_created: bool = False
    backup_path: Path | None = None
    reauth_required: bool = False
    validation_before: ValidationReport | None = None
    validation_after: ValidationReport | None = None
    duration_ms: int = 0
    error: str | None = None


# ── Backups ───────────────────────────────────────────────────────────────

class BackupResult(BaseModel):
    success: bool = False
    backup_path: Path | None = None
    files_copied: int = 0
    total_bytes: int = 0
    skipped_files: list[str] = Field(default_factory=list)
    duration_ms: int = 0
    error: str | None = None


class BackupInfo(BaseModel):
    name: str
    path: Path
    created_at: datetime | None = None
    reason: str | None = None
    source: str | None = None
    session_name: str | None = None
    file_count: int = 0
    total_bytes: int = 0


# ── Diagnostics ───────────────────────────────────────────────────────────

class SessionDiagnostic(BaseModel):
    directory: SessionDirectory
    validation: ValidationReport
    age_days: float | None = None


class DiagnosticReport(BaseModel):
    generated_at: datetime = Field(default_factory=_utcnow)
    base_dir: Path
    identity: InstanceIdentity | None = None
    lock: LockInfo | None = None
    environment: dict[str, str | None] = Field(default_factory=dict)
    system: dict[str, str | int | None] = Field(default_factory=dict)
    repository: RepositoryInfo | None = None
    sessions: list[SessionDiagnostic] = Field(default_factory=list)
    total_sessions: int = 0
    valid_sessions: int = 0
    health_score: int = 0
    duration_ms: int = 0
    recommendations: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
