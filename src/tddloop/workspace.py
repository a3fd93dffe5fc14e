from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_WORKTREES_DIR = "../.codex-worktrees"
DEFAULT_BRANCH_PREFIX = "tdd/"


class WorkspaceError(RuntimeError):
    """Raised when an isolated worktree cannot be created."""


class GitCommandError(RuntimeError):
    def __init__(self, args: list[str], exit_code: int, stderr: str) -> None:
        command = " ".join(["git", *args])
        super().__init__(f"Git command failed: {command} (exit code: {exit_code}) {stderr}".strip())
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


@dataclass(slots=True)
class WorktreeInfo:
    path: str
    branch_name: str
    base_branch: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "branchName": self.branch_name,
            "baseBranch": self.base_branch,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorktreeInfo:
        return cls(
            path=str(data.get("path", "")),
            branch_name=str(data.get("branchName", "")),
            base_branch=str(data.get("baseBranch", "")),
        )


class WorktreeManager:
    def __init__(
        self,
        repo_root: Path,
        worktrees_dir: str | Path = DEFAULT_WORKTREES_DIR,
        *,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
    ) -> None:
        self.repo_root = repo_root.resolve()
        worktrees_path = Path(worktrees_dir)
        if not worktrees_path.is_absolute():
            worktrees_path = self.repo_root / worktrees_path
        self.worktrees_dir = worktrees_path.resolve()
        self.branch_prefix = branch_prefix

    def _run_git(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=cwd or self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise GitCommandError(args, proc.returncode, proc.stderr.strip() or proc.stdout.strip())
        return proc

    def is_git_repository(self) -> bool:
        try:
            proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        except OSError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def head_branch(self) -> str:
        """Name of the checked-out branch, or "" when HEAD is detached."""
        return self._run_git(["branch", "--show-current"]).stdout.strip()

    def current_branch(self) -> str:
        branch = self.head_branch()
        if branch:
            return branch
        # Detached HEAD: branch off the commit itself.
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def branch_exists(self, branch_name: str) -> bool:
        proc = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch_name}"],
            check=False,
        )
        return proc.returncode == 0

    def has_uncommitted_changes(self) -> bool:
        proc = self._run_git(["status", "--porcelain"])
        return bool(proc.stdout.strip())

    def remote_url(self, name: str = "origin") -> str | None:
        proc = self._run_git(["remote", "get-url", name], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def path_for(self, task_id: str) -> Path:
        return self.worktrees_dir / task_id

    def create_worktree(
        self,
        task_id: str,
        base_branch: str | None = None,
        branch_name: str | None = None,
    ) -> WorktreeInfo:
        if not self.is_git_repository():
            raise WorkspaceError(f"Not a git repository: {self.repo_root}")

        path = self.path_for(task_id)
        branch = branch_name or f"{self.branch_prefix}{task_id}"
        try:
            base = base_branch or self.current_branch()
            if path.exists():
                raise WorkspaceError(f"Worktree path already exists: {path}")
            if self.branch_exists(branch):
                raise WorkspaceError(f"Branch already exists: {branch}")
            created_parent = not path.parent.exists()
            path.parent.mkdir(parents=True, exist_ok=True)
        except (GitCommandError, OSError) as exc:
            raise WorkspaceError(f"Worktree creation failed: {exc}") from exc

        try:
            self._run_git(["worktree", "add", str(path), "-b", branch, base])
        except GitCommandError as exc:
            self._rollback(path, branch, remove_parent=created_parent)
            raise WorkspaceError(f"Worktree creation failed: {exc}") from exc

        logger.info("Created worktree %s on branch %s (base %s)", path, branch, base)
        return WorktreeInfo(path=str(path), branch_name=branch, base_branch=base)

    def _rollback(self, path: Path, branch: str, *, remove_parent: bool = False) -> None:
        self._run_git(["worktree", "remove", "--force", str(path)], check=False)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        self._run_git(["worktree", "prune"], check=False)
        self._run_git(["branch", "-D", branch], check=False)
        if remove_parent and path.parent.is_dir() and not any(path.parent.iterdir()):
            try:
                path.parent.rmdir()
            except OSError as exc:
                logger.warning("Could not remove %s: %s", path.parent, exc)

    def cleanup_worktree(self, info: WorktreeInfo, *, keep_branch: bool = False) -> None:
        """Remove the worktree directory and, unless ``keep_branch``, its branch.

        Never raises; failures are logged.
        """
        path = Path(info.path)
        try:
            if path.exists():
                proc = self._run_git(["worktree", "remove", "--force", str(path)], check=False)
                if proc.returncode != 0:
                    logger.warning(
                        "git worktree remove failed for %s: %s", path, proc.stderr.strip()
                    )
                    shutil.rmtree(path)
            self._run_git(["worktree", "prune"], check=False)
            if not keep_branch and info.branch_name and self.branch_exists(info.branch_name):
                proc = self._run_git(["branch", "-D", info.branch_name], check=False)
                if proc.returncode != 0:
                    logger.warning(
                        "Failed to delete branch %s: %s", info.branch_name, proc.stderr.strip()
                    )
        except (OSError, GitCommandError) as exc:
            logger.warning("Worktree cleanup failed for %s: %s", path, exc)
            return
        logger.info("Cleaned up worktree %s", path)

    def push_branch(self, info: WorktreeInfo, remote: str = "origin") -> None:
        self._run_git(["push", "-u", remote, info.branch_name], cwd=Path(info.path))

    def list_worktrees(self) -> list[WorktreeInfo]:
        output = self._run_git(["worktree", "list", "--porcelain"]).stdout
        worktrees: list[WorktreeInfo] = []
        for entry in output.strip().split("\n\n"):
            path = ""
            branch = ""
            for line in entry.splitlines():
                if line.startswith("worktree "):
                    path = line[len("worktree ") :]
                elif line.startswith("branch "):
                    branch = line[len("branch ") :].removeprefix("refs/heads/")
            if path and branch:
                worktrees.append(WorktreeInfo(path=path, branch_name=branch, base_branch=""))
        return worktrees
