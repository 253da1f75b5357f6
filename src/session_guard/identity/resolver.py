"""Instance identity resolution.

An identity names the session directory a worker owns. Resolution order:
explicit override, then the strategy configured through ``SG_*`` variables,
then the current git branch for branch-aware strategies. Nothing in here
raises; any failure degrades to the shared identity.
"""

from __future__ import annotations

import hashlib
import os
import re
import time
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Mapping

from pydantic import BaseModel

from ..config import SHARED_INSTANCE_ID, StrategySettings, load_strategy_settings, session_path
from ..log import SessionLogger, get_logger
from ..models import GitBranchInfo, IdentitySource, InstanceIdentity, SessionStrategy
from .git import DETACHED_HEAD, BranchDetector

MAIN_BRANCHES = ("main", "master", "develop", "dev")
FEATURE_BRANCH_PATTERNS = ("feature/*", "feat/*", "bugfix/*", "hotfix/*")
MAX_ID_LENGTH = 50
DEFAULT_BRANCH_ID = "default"

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9\-_]")
_UNDERSCORE_RUN_RE = re.compile(r"_+")

_STRATEGY_VARIABLES = (
    "SG_TEAM_COLLABORATION",
    "SG_BRANCH_PATTERN_STRATEGY",
    "SG_BRANCH_SESSIONS",
    "SG_SHARED_SESSION",
)

FALLBACK_IDENTITY = InstanceIdentity(
    strategy=SessionStrategy.shared,
    id=SHARED_INSTANCE_ID,
    source=IdentitySource.fallback,
)


def sanitize_branch_name(name: str | None, max_length: int = MAX_ID_LENGTH) -> str:
    """Turn a branch name into a filesystem-safe instance id.

    Long names are cut and suffixed with a short sha1 of the full cleaned
    name, so two long branches sharing a prefix still get distinct ids.
    Applying it twice gives the same result as applying it once.
    """
    cleaned = _UNSAFE_RE.sub("_", name or "")
    cleaned = _UNDERSCORE_RUN_RE.sub("_", cleaned).strip("_")
    if len(cleaned) > max_length:
        digest = hashlib.sha1(cleaned.encode("utf-8")).hexdigest()[:7]
        cleaned = f"{cleaned[: max_length - 8].rstrip('_')}_{digest}"
    return cleaned or DEFAULT_BRANCH_ID


def classify_branch(
    branch: str | None,
    main_branches: tuple[str, ...] = MAIN_BRANCHES,
    feature_patterns: tuple[str, ...] = FEATURE_BRANCH_PATTERNS,
) -> SessionStrategy:
    if not branch or branch == DETACHED_HEAD:
        return SessionStrategy.shared
    if branch in main_branches:
        return SessionStrategy.shared
    if any(fnmatchcase(branch, pattern) for pattern in feature_patterns):
        return SessionStrategy.branch_specific
    return SessionStrategy.shared


class ResolveOptions(BaseModel):
    strategy: SessionStrategy | None = None
    instance_id: str | None = None
    use_shared_session: bool = True
    main_branches: tuple[str, ...] = MAIN_BRANCHES
    feature_patterns: tuple[str, ...] = FEATURE_BRANCH_PATTERNS


class IdentityResolver:
    """Computes the :class:`InstanceIdentity` for the current process.

    The environment, branch detector, pid and start time are all injectable
    and captured at construction, so repeated ``resolve()`` calls with the
    same options return the same identity.
    """

    def __init__(
        self,
        *,
        environ: Mapping[str, str] | None = None,
        cwd: Path | str | None = None,
        detector: BranchDetector | None = None,
        logger: SessionLogger | None = None,
        pid: int | None = None,
        start_time_ns: int | None = None,
    ) -> None:
        self._environ = dict(os.environ if environ is None else environ)
        self._log = logger or get_logger(__name__)
        self.detector = detector or BranchDetector(cwd, environ=self._environ, logger=self._log)
        self._pid = os.getpid() if pid is None else pid
        self._start_time_ns = time.monotonic_ns() if start_time_ns is None else start_time_ns

    @property
    def settings(self) -> StrategySettings:
        return load_strategy_settings(self._environ)

    def invalidate_cache(self) -> None:
        self.detector.cache.invalidate()

    def resolve(self, options: ResolveOptions | None = None) -> InstanceIdentity:
        opts = options or ResolveOptions()
        try:
            identity = self._resolve(opts)
        except Exception as exc:
            self._log.error("Identity resolution failed, using shared fallback", error=repr(exc))
            return FALLBACK_IDENTITY
        self._log.debug(
            "Resolved instance identity",
            strategy=identity.strategy.value,
            id=identity.id,
            source=identity.source.value,
        )
        return identity

    def session_path_for(self, base_dir: Path | str, options: ResolveOptions | None = None) -> Path:
        return session_path(base_dir, self.resolve(options).id)

    def configured_strategy(self) -> tuple[SessionStrategy, IdentitySource]:
        settings = self.settings
        source = (
            IdentitySource.env_var
            if any(name in self._environ for name in _STRATEGY_VARIABLES)
            else IdentitySource.config_override
        )
        if settings.team_collaboration:
            return SessionStrategy.team, source
        if settings.branch_pattern_strategy:
            return SessionStrategy.pattern_based, source
        if settings.branch_sessions or not settings.shared_session:
            return SessionStrategy.branch_specific, source
        return SessionStrategy.shared, source

    def _resolve(self, opts: ResolveOptions) -> InstanceIdentity:
        if opts.instance_id:
            return InstanceIdentity(
                strategy=opts.strategy or SessionStrategy.shared,
                id=sanitize_branch_name(opts.instance_id),
                source=IdentitySource.config_override,
            )

        if opts.strategy is not None:
            strategy, source = opts.strategy, IdentitySource.config_override
        else:
            strategy, source = self.configured_strategy()

        if strategy is SessionStrategy.team:
            return InstanceIdentity(
                strategy=strategy,
                id=sanitize_branch_name(self.settings.team_session_prefix),
                source=source,
            )

        if strategy in (SessionStrategy.branch_specific, SessionStrategy.pattern_based):
            return self._branch_identity(opts, source)

        if not opts.use_shared_session:
            return self._instance_identity()

        return InstanceIdentity(strategy=SessionStrategy.shared, id=SHARED_INSTANCE_ID, source=source)

    def _detect_branch(self) -> GitBranchInfo:
        if not self.settings.branch_detection:
            return GitBranchInfo()
        try:
            return self.detector.detect()
        except Exception as exc:
            self._log.warning("Branch detection failed", error=repr(exc))
            return GitBranchInfo()

    def _branch_identity(self, opts: ResolveOptions, source: IdentitySource) -> InstanceIdentity:
        info = self._detect_branch()
        classified = classify_branch(info.branch, opts.main_branches, opts.feature_patterns)
        if classified is SessionStrategy.branch_specific:
            return InstanceIdentity(
                strategy=SessionStrategy.branch_specific,
                id=sanitize_branch_name(info.branch),
                source=IdentitySource.git_branch,
                branch=info.branch,
            )
        return InstanceIdentity(
            strategy=SessionStrategy.shared,
            id=SHARED_INSTANCE_ID,
            source=source,
            branch=info.branch,
        )

    def _instance_identity(self) -> InstanceIdentity:
        """Per-worker identity used when the shared default is switched off."""
        info = self._detect_branch()
        if info.branch and info.branch != DETACHED_HEAD and info.branch not in MAIN_BRANCHES:
            return InstanceIdentity(
                strategy=SessionStrategy.branch_specific,
                id=sanitize_branch_name(info.branch),
                source=IdentitySource.git_branch,
                branch=info.branch,
            )

        supervisor_id = self._supervisor_id()
        if supervisor_id:
            return InstanceIdentity(
                strategy=SessionStrategy.branch_specific,
                id=sanitize_branch_name(supervisor_id),
                source=IdentitySource.process_supervisor,
            )

        return InstanceIdentity(
            strategy=SessionStrategy.branch_specific,
            id=f"direct_{self._pid}_{str(self._start_time_ns)[-6:]}",
            source=IdentitySource.direct_execution,
        )

    def _supervisor_id(self) -> str | None:
        env = self._environ
        app_name = env.get("SG_APP_NAME")
        index = env.get("SG_INSTANCE_INDEX")
        if app_name and index is not None:
            return f"{app_name}_{index}"

        pm2_name = env.get("PM2_APP_NAME") or env.get("name")
        pm2_index = env.get("PM2_INSTANCE_ID") or env.get("NODE_APP_INSTANCE")
        if pm2_name and pm2_index is not None:
            return f"{pm2_name}_{pm2_index}"
        if env.get("pm_id") is not None:
            return f"pm2_{env['pm_id']}"

        supervisord_name = env.get("SUPERVISOR_PROCESS_NAME")
        if supervisord_name:
            return supervisord_name
        return None
