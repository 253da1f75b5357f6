"""Git branch detection for branch-aware session naming.

Detection tries, in order: the ``git`` command, the repository's HEAD file,
then CI environment variables. Each method handles its own failures so a
missing git binary or an unreadable HEAD never stops the next one.
"""

from __future__ import annotations

import os
import re
import subprocess
import time
from pathlib import Path
from typing import Callable, Mapping

from ..config import BRANCH_CACHE_TTL, GIT_COMMAND_TIMEOUT
from ..log import SessionLogger, get_logger
from ..models import GitBranchInfo, RepositoryInfo

DETACHED_HEAD = "detached-head"

CI_BRANCH_VARIABLES = (
    "GIT_BRANCH",
    "BRANCH_NAME",
    "CI_COMMIT_REF_NAME",
    "GITHUB_REF_NAME",
    "GITLAB_CI_COMMIT_REF_NAME",
    "BUILDKITE_BRANCH",
)

_SHA_RE = re.compile(r"^[0-9a-f]{40}$")

Runner = Callable[[list[str], Path], subprocess.CompletedProcess]


def _run(argv: list[str], cwd: Path) -> subprocess.CompletedProcess:
    return subprocess.run(
        argv,
        cwd=str(cwd),
        check=False,
        capture_output=True,
        text=True,
        timeout=GIT_COMMAND_TIMEOUT,
    )


def find_repository_root(start: Path | str) -> Path | None:
    """Walk up from ``start`` to the first directory containing ``.git``."""
    current = Path(start).resolve()
    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


def _git_dir(root: Path) -> Path:
    dot_git = root / ".git"
    if dot_git.is_file():
        # Worktrees and submodules: ".git" holds "gitdir: <path>"
        content = dot_git.read_text(encoding="utf-8").strip()
        if content.startswith("gitdir:"):
            target = Path(content[len("gitdir:"):].strip())
            return target if target.is_absolute() else (root / target).resolve()
    return dot_git


def branch_from_command(root: Path, run: Runner = _run) -> str | None:
    cp = run(["git", "-C", str(root), "rev-parse", "--abbrev-ref", "HEAD"], root)
    if cp.returncode == 0:
        branch = cp.stdout.strip()
        if branch == "HEAD":
            return DETACHED_HEAD
        if branch:
            return branch
    cp = run(["git", "-C", str(root), "symbolic-ref", "--short", "HEAD"], root)
    if cp.returncode == 0 and cp.stdout.strip():
        return cp.stdout.strip()
    return None


def branch_from_head_file(root: Path) -> str | None:
    head = _git_dir(root) / "HEAD"
    if not head.is_file():
        return None
    content = head.read_text(encoding="utf-8").strip()
    if content.startswith("ref:"):
        ref = content[len("ref:"):].strip()
        return ref.removeprefix("refs/heads/") or None
    if _SHA_RE.match(content):
        return DETACHED_HEAD
    return None


def branch_from_environment(environ: Mapping[str, str]) -> str | None:
    for name in CI_BRANCH_VARIABLES:
        value = (environ.get(name) or "").strip()
        if value:
            return value.removeprefix("refs/heads/")
    return None


class BranchCache:
    """Time-bounded memo of the last branch lookup per directory."""

    def __init__(self, ttl: float = BRANCH_CACHE_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[Path, tuple[float, GitBranchInfo]] = {}

    def get(self, key: Path) -> GitBranchInfo | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, info = entry
        if self._clock() - stored_at > self.ttl:
            del self._entries[key]
            return None
        return info

    def put(self, key: Path, info: GitBranchInfo) -> None:
        self._entries[key] = (self._clock(), info)

    def invalidate(self) -> None:
        self._entries.clear()


class BranchDetector:
    def __init__(
        self,
        cwd: Path | str | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        run: Runner = _run,
        cache: BranchCache | None = None,
        logger: SessionLogger | None = None,
    ) -> None:
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self._environ = os.environ if environ is None else environ
        self._run = run
        self.cache = cache or BranchCache()
        self._log = logger or get_logger(__name__)

    def detect(self) -> GitBranchInfo:
        key = self.cwd.resolve()
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        info = self._detect_uncached()
        self.cache.put(key, info)
        return info

    def _detect_uncached(self) -> GitBranchInfo:
        root = find_repository_root(self.cwd)

        if root is not None:
            try:
                branch = branch_from_command(root, self._run)
                if branch:
                    return self._info(True, branch, "command")
            except (OSError, subprocess.SubprocessError) as exc:
                self._log.debug("git command branch detection failed", cwd=str(root), error=str(exc))

            try:
                branch = branch_from_head_file(root)
                if branch:
                    return self._info(True, branch, "head-file")
            except (OSError, UnicodeDecodeError) as exc:
                self._log.debug("HEAD file branch detection failed", cwd=str(root), error=str(exc))

        branch = branch_from_environment(self._environ)
        if branch:
            return self._info(root is not None, branch, "environment")

        self._log.debug("No git branch detected", cwd=str(self.cwd))
        return GitBranchInfo(is_repository=root is not None)

    @staticmethod
    def _info(is_repository: bool, branch: str, method: str) -> GitBranchInfo:
        return GitBranchInfo(
            is_repository=is_repository,
            branch=branch,
            method=method,
            detached=branch == DETACHED_HEAD,
        )


def repository_info(directory: Path | str | None = None, run: Runner = _run) -> RepositoryInfo:
    """Branch, commit, origin remote and dirty flag; empty when not a repo."""
    root = find_repository_root(directory or Path.cwd())
    if root is None:
        return RepositoryInfo()

    def _out(*args: str) -> str | None:
        try:
            cp = run(["git", "-C", str(root), *args], root)
        except (OSError, subprocess.SubprocessError):
            return None
        if cp.returncode != 0:
            return None
        return cp.stdout.strip()

    branch = _out("rev-parse", "--abbrev-ref", "HEAD")
    if branch is None:
        try:
            branch = branch_from_head_file(root)
        except OSError:
            branch = None
    status = _out("status", "--porcelain")
    return RepositoryInfo(
        is_repository=True,
        branch=DETACHED_HEAD if branch == "HEAD" else branch,
        commit=_out("rev-parse", "HEAD"),
        remote=_out("config", "--get", "remote.origin.url") or None,
        dirty=None if status is None else bool(status),
    )
