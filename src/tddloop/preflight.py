from __future__ import annotations

import logging
import os
import shutil
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from tddloop.config import RuntimeContext, TddLoopConfig
from tddloop.github import GitHubError, parse_github_url, verify_token
from tddloop.workspace import GitCommandError, WorktreeManager

logger = logging.getLogger(__name__)

PROTECTED_BRANCHES = frozenset({"main", "master"})


@dataclass(slots=True)
class PreflightResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class PreflightError(RuntimeError):
    def __init__(self, result: PreflightResult) -> None:
        detail = "; ".join(result.errors) or "unknown failure"
        super().__init__(f"Preflight checks failed: {detail}")
        self.result = result


def _parse_version(text: str) -> tuple[int, ...]:
    parts: list[int] = []
    for piece in text.strip().split("."):
        if not piece.isdigit():
            break
        parts.append(int(piece))
    return tuple(parts)


def _is_writable(directory: Path) -> bool:
    if not directory.is_dir():
        return False
    try:
        with tempfile.NamedTemporaryFile(dir=directory, prefix=".tddloop-write-"):
            pass
    except OSError:
        return False
    return True


class PreflightValidator:
    """Checks the environment before any workspace or agent work begins.

    Each check appends to ``errors`` (blocking) or ``warnings`` (advisory);
    nothing here raises except ``ensure_ready``.
    """

    def __init__(
        self,
        context: RuntimeContext,
        config: TddLoopConfig | None = None,
        *,
        http: httpx.Client | None = None,
        version_info: tuple[int, ...] | None = None,
    ) -> None:
        self.context = context
        self.config = config or TddLoopConfig.default()
        self.workspace = WorktreeManager(context.cwd, self.config.workspace.worktrees_dir)
        self._http = http
        self._version_info = tuple(version_info or sys.version_info[:3])

    @property
    def token_env(self) -> str:
        return self.config.github.token_env

    def validate_environment(self) -> PreflightResult:
        result = PreflightResult()
        is_repo = self._check_git_repository(result)
        if is_repo:
            self._check_remote(result)
        token = self._check_token(result)
        if token and self.config.preflight.verify_token:
            self._check_token_remote(result, token)
        self._check_agent_client(result)
        self._check_write_access(result)
        self._check_runtime_version(result)
        if is_repo:
            self._check_working_tree(result)

        for warning in result.warnings:
            logger.warning("Preflight warning: %s", warning)
        for error in result.errors:
            logger.error("Preflight error: %s", error)
        logger.info(
            "Preflight finished: %d error(s), %d warning(s)",
            len(result.errors),
            len(result.warnings),
        )
        return result

    def quick_validation(self) -> bool:
        result = PreflightResult()
        self._check_git_repository(result)
        if not self.context.get(self.token_env):
            result.errors.append(self._missing_token_message())
        self._check_runtime_version(result)
        return result.success

    def ensure_ready(self) -> PreflightResult:
        result = self.validate_environment()
        if not result.success:
            raise PreflightError(result)
        return result

    def _check_git_repository(self, result: PreflightResult) -> bool:
        if self.workspace.is_git_repository():
            return True
        result.errors.append(f"Not a git repository: {self.context.cwd}")
        return False

    def _check_remote(self, result: PreflightResult) -> None:
        remote = self.config.github.remote
        url = self.workspace.remote_url(remote)
        if url is None:
            result.errors.append(f"No '{remote}' remote configured")
            return
        try:
            parse_github_url(url)
        except GitHubError:
            result.warnings.append(
                f"Remote '{remote}' does not point at GitHub ({url}); pull requests will not be created"
            )

    def _missing_token_message(self) -> str:
        return (
            f"{self.token_env} is not set. Export it or add it to .env.local "
            "so pull requests can be checked and created."
        )

    def _check_token(self, result: PreflightResult) -> str | None:
        token = self.context.get(self.token_env)
        if not token:
            result.errors.append(self._missing_token_message())
            return None
        min_length = self.config.preflight.min_token_length
        if len(token) < min_length or any(char.isspace() for char in token):
            result.warnings.append(
                f"{self.token_env} looks malformed (expected at least {min_length} "
                "characters without whitespace)"
            )
        return token

    def _check_token_remote(self, result: PreflightResult, token: str) -> None:
        try:
            status = verify_token(token, api_url=self.config.github.api_url, http=self._http)
        except httpx.HTTPError as exc:
            result.warnings.append(f"Could not verify {self.token_env}: {exc}")
            return
        if status == 401:
            result.errors.append(f"{self.token_env} was rejected by GitHub (401 Unauthorized)")
        elif not 200 <= status < 300:
            result.warnings.append(f"Could not verify {self.token_env}: HTTP {status}")

    def _check_agent_client(self, result: PreflightResult) -> None:
        agent = self.config.agent
        if agent.client == "openai":
            logger.info("Skipping agent CLI lookup for the openai client")
            if not self.context.get("OPENAI_API_KEY"):
                result.errors.append("OPENAI_API_KEY is not set (required by the openai client)")
            return
        search_path = self.context.get("PATH", os.defpath)
        if shutil.which(agent.binary, path=search_path) is None:
            result.errors.append(
                f"Agent CLI '{agent.binary}' was not found on PATH. Install it or set "
                "agent.binary in tddloop.toml."
            )

    def _check_write_access(self, result: PreflightResult) -> None:
        cwd = self.context.cwd
        if not _is_writable(cwd):
            result.errors.append(f"No write permission in current directory: {cwd}")
        worktrees_dir = self.workspace.worktrees_dir
        # The worktrees directory itself may not exist yet.
        target = worktrees_dir if worktrees_dir.exists() else worktrees_dir.parent
        if not _is_writable(target):
            result.errors.append(f"No write permission for worktrees in: {target}")

    def _check_runtime_version(self, result: PreflightResult) -> None:
        required = _parse_version(self.config.preflight.min_python)
        current = self._version_info
        if current < required:
            result.errors.append(
                "Python "
                + ".".join(str(part) for part in required)
                + " or newer is required (running "
                + ".".join(str(part) for part in current)
                + ")"
            )

    def _check_working_tree(self, result: PreflightResult) -> None:
        try:
            if self.workspace.has_uncommitted_changes():
                result.warnings.append(
                    "Working tree has uncommitted changes; they will not be part of the task branch"
                )
            branch = self.workspace.head_branch()
        except (GitCommandError, OSError) as exc:
            result.warnings.append(f"Could not inspect working tree: {exc}")
            return
        if not branch:
            result.warnings.append("HEAD is detached; the task branch will start from a bare commit")
        elif branch in PROTECTED_BRANCHES:
            result.warnings.append(f"Currently on '{branch}'; the task branch will be based on it")
