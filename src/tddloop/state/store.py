from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from tddloop.agent import AgentResult
from tddloop.workspace import WorktreeInfo

logger = logging.getLogger(__name__)

TaskStatus = Literal["running", "succeeded", "failed"]
TASK_STATUSES = ("running", "succeeded", "failed")
TERMINAL_STATUSES = frozenset({"succeeded", "failed"})

REQUIRED_FIELDS = (
    "taskId",
    "specPath",
    "originalSpec",
    "branchName",
    "worktreeInfo",
    "currentIteration",
    "maxIterations",
    "coderResponses",
    "reviewerResponses",
    "status",
    "createdAt",
    "updatedAt",
)


class StateStoreError(RuntimeError):
    """Raised when task state cannot be persisted or read."""


class TaskNotFoundError(StateStoreError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class StateParseError(StateStoreError):
    def __init__(self, task_id: str, detail: str) -> None:
        super().__init__(f"Failed to parse task state {task_id}: {detail}")
        self.task_id = task_id


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


@dataclass(slots=True)
class TaskState:
    task_id: str
    spec_path: str
    original_spec: str
    branch_name: str
    worktree_info: WorktreeInfo
    max_iterations: int
    current_iteration: int = 0
    coder_responses: list[AgentResult] = field(default_factory=list)
    reviewer_responses: list[AgentResult] = field(default_factory=list)
    status: TaskStatus = "running"
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = ""
    error: str | None = None

    def __post_init__(self) -> None:
        if not self.updated_at:
            self.updated_at = self.created_at

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def touch(self) -> None:
        now = _utcnow_iso()
        # ISO-8601 UTC strings of fixed width order lexicographically.
        if now > self.updated_at:
            self.updated_at = now

    def record_turn(self, coder: AgentResult, reviewer: AgentResult) -> None:
        if self.is_terminal:
            raise StateStoreError(f"Task {self.task_id} is already {self.status}")
        if self.current_iteration >= self.max_iterations:
            raise StateStoreError(f"Task {self.task_id} has no iterations left")
        self.coder_responses.append(coder)
        self.reviewer_responses.append(reviewer)
        self.current_iteration += 1
        self.touch()

    def record_failed_turn(
        self,
        *,
        coder: AgentResult | None,
        reviewer: AgentResult | None,
        error: str,
    ) -> None:
        if coder is not None:
            self.coder_responses.append(coder)
        if reviewer is not None:
            self.reviewer_responses.append(reviewer)
        self.finish("failed", error=error)

    def finish(self, status: TaskStatus, *, error: str | None = None) -> None:
        if self.is_terminal:
            return
        self.status = status
        self.error = error
        self.touch()

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "specPath": self.spec_path,
            "originalSpec": self.original_spec,
            "branchName": self.branch_name,
            "worktreeInfo": self.worktree_info.to_dict(),
            "currentIteration": self.current_iteration,
            "maxIterations": self.max_iterations,
            "coderResponses": [item.to_dict() for item in self.coder_responses],
            "reviewerResponses": [item.to_dict() for item in self.reviewer_responses],
            "status": self.status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Any) -> TaskState:
        if not isinstance(data, dict):
            raise ValueError("task state must be a JSON object")
        missing = [name for name in REQUIRED_FIELDS if name not in data]
        if missing:
            raise ValueError(f"missing required field(s): {', '.join(missing)}")
        if data["status"] not in TASK_STATUSES:
            raise ValueError(f"unknown status: {data['status']!r}")
        if not isinstance(data["coderResponses"], list) or not isinstance(
            data["reviewerResponses"], list
        ):
            raise ValueError("coderResponses and reviewerResponses must be lists")
        if not isinstance(data["worktreeInfo"], dict):
            raise ValueError("worktreeInfo must be an object")
        return cls(
            task_id=str(data["taskId"]),
            spec_path=str(data["specPath"]),
            original_spec=str(data["originalSpec"]),
            branch_name=str(data["branchName"]),
            worktree_info=WorktreeInfo.from_dict(data["worktreeInfo"]),
            current_iteration=int(data["currentIteration"]),
            max_iterations=int(data["maxIterations"]),
            coder_responses=[AgentResult.from_dict(item) for item in data["coderResponses"]],
            reviewer_responses=[
                AgentResult.from_dict(item) for item in data["reviewerResponses"]
            ],
            status=data["status"],
            created_at=str(data["createdAt"]),
            updated_at=str(data["updatedAt"]),
            error=data.get("error"),
        )


class TaskStateStore:
    """One JSON document per task, replaced whole on every save."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir

    def path_for(self, task_id: str) -> Path:
        if not task_id or "/" in task_id or "\\" in task_id or task_id.startswith("."):
            raise StateStoreError(f"Invalid task id: {task_id!r}")
        return self.state_dir / f"{task_id}.json"

    def save(self, state: TaskState) -> Path:
        path = self.path_for(state.task_id)
        serialized = json.dumps(state.to_dict(), ensure_ascii=False, indent=2, default=str)
        temp_name: str | None = None
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=self.state_dir,
                prefix=f".{state.task_id}-",
                suffix=".tmp",
                delete=False,
            ) as handle:
                temp_name = handle.name
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
            temp_name = None
        except OSError as exc:
            raise StateStoreError(f"Failed to save task state {state.task_id}: {exc}") from exc
        finally:
            if temp_name is not None:
                try:
                    os.unlink(temp_name)
                except OSError:
                    pass
        return path

    def load(self, task_id: str) -> TaskState:
        path = self.path_for(task_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise TaskNotFoundError(task_id) from exc
        except OSError as exc:
            raise StateStoreError(f"Failed to read task state {task_id}: {exc}") from exc
        try:
            return TaskState.from_dict(json.loads(raw))
        except (json.JSONDecodeError, ValueError, TypeError) as exc:
            raise StateParseError(task_id, str(exc)) from exc

    def exists(self, task_id: str) -> bool:
        return self.path_for(task_id).is_file()

    def delete(self, task_id: str) -> None:
        try:
            self.path_for(task_id).unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StateStoreError(f"Failed to delete task state {task_id}: {exc}") from exc

    def list_task_ids(self) -> list[str]:
        if not self.state_dir.is_dir():
            return []
        return sorted(
            path.stem
            for path in self.state_dir.glob("*.json")
            if not path.name.startswith(".")
        )
