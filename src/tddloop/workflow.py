from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import click

from tddloop.agent import AgentResult
from tddloop.backends.base import AgentClient, AgentExecutionError
from tddloop.config import RuntimeContext, TddLoopConfig
from tddloop.debug_log import DebugMetadata, DebugOptions, log_debug_messages
from tddloop.github import GitHubError, PullRequestChecker, PullRequestInfo, PullRequestPublisher
from tddloop.messages import DisplayOptions
from tddloop.preflight import PreflightError, PreflightValidator
from tddloop.prompts import build_transcript, format_coder_prompt, format_reviewer_prompt
from tddloop.specialists import CoderAgent, ReviewerAgent
from tddloop.state import StateStoreError, TaskState, TaskStateStore
from tddloop.teams import Team, mcp_options, team_from_name
from tddloop.verdict import VerdictPredicate, marker_verdict
from tddloop.workspace import GitCommandError, WorkspaceError, WorktreeInfo, WorktreeManager

logger = logging.getLogger(__name__)

TASK_ID_ALPHABET = string.digits + string.ascii_lowercase
TASK_ID_SUFFIX_LENGTH = 6
INCOMPLETE_HANDOFF = "[Agent conversation incomplete - no response content available]"


class SpecFileNotFoundError(RuntimeError):
    def __init__(self, spec_path: Path) -> None:
        super().__init__(f"Specification file not found: {spec_path}")
        self.spec_path = spec_path


class ValidationError(ValueError):
    """Raised when workflow inputs are unusable."""


class WorkflowCancelledError(RuntimeError):
    """Raised between turns once the caller has requested cancellation."""


EXPECTED_ERRORS = (
    SpecFileNotFoundError,
    ValidationError,
    WorkflowCancelledError,
    AgentExecutionError,
    PreflightError,
    WorkspaceError,
)


class WorkflowPhase(str, Enum):
    INITIALIZING = "initializing"
    CODING = "coding"
    REVIEWING = "reviewing"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(slots=True)
class WorkflowOptions:
    spec_path: str
    max_reviews: int = 3
    branch_name: str | None = None
    base_branch: str | None = None
    cleanup: bool = True
    debug: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "specPath": self.spec_path,
            "maxReviews": self.max_reviews,
            "branchName": self.branch_name,
            "baseBranch": self.base_branch,
            "cleanup": self.cleanup,
            "debug": self.debug,
        }


@dataclass(slots=True)
class WorkflowResult:
    success: bool
    task_id: str
    iterations: int = 0
    pr_url: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "taskId": self.task_id,
            "iterations": self.iterations,
            "prUrl": self.pr_url,
            "error": self.error,
        }


@dataclass(slots=True)
class _RunState:
    """Bookkeeping for one ``run`` call."""

    task_id: str
    options: WorkflowOptions
    phases: list[WorkflowPhase] = field(default_factory=list)
    worktree: WorktreeInfo | None = None
    task: TaskState | None = None
    accepted: bool = False
    pull_request: PullRequestInfo | None = None


def generate_task_id(now_ms: int | None = None) -> str:
    timestamp = int(time.time() * 1000) if now_ms is None else now_ms
    suffix = "".join(secrets.choice(TASK_ID_ALPHABET) for _ in range(TASK_ID_SUFFIX_LENGTH))
    return f"task-{timestamp}-{suffix}"


def handoff_text(result: AgentResult) -> str:
    """Best text to hand to the next agent: final response, result summary, placeholder."""
    if result.final_response.strip():
        return result.final_response
    for message in reversed(result.messages):
        if message.get("type") == "result":
            summary = message.get("result")
            if isinstance(summary, str) and summary.strip():
                return summary
            break
    return INCOMPLETE_HANDOFF


class TDDWorkflow:
    """Drives coder and reviewer turns in an isolated worktree until approval.

    ``run`` never raises: every failure becomes a failed ``WorkflowResult``
    and, once a task exists, a ``failed`` task state on disk.
    """

    def __init__(
        self,
        context: RuntimeContext,
        config: TddLoopConfig | None = None,
        *,
        client: AgentClient,
        store: TaskStateStore | None = None,
        workspace: WorktreeManager | None = None,
        pr_checker: PullRequestChecker | None = None,
        verdict: VerdictPredicate = marker_verdict,
        preflight: PreflightValidator | None = None,
        display: DisplayOptions | None = None,
        cancel: asyncio.Event | None = None,
        echo: Callable[[str], None] = click.echo,
        team: Team | None = None,
        mcp_servers: Mapping[str, Any] | None = None,
    ) -> None:
        self.context = context
        self.config = config or TddLoopConfig.default()
        self.client = client
        self.store = store or TaskStateStore(context.cwd / self.config.state.state_dir)
        self.workspace = workspace or WorktreeManager(
            context.cwd,
            self.config.workspace.worktrees_dir,
            branch_prefix=self.config.workflow.branch_prefix,
        )
        self.pr_checker = pr_checker
        self.verdict = verdict
        self.preflight = preflight
        display_config = self.config.display
        self.display = display or DisplayOptions(
            show_tool_calls=display_config.show_tool_calls,
            show_timestamps=display_config.show_timestamps,
            verbose=display_config.verbose,
            max_tool_result_chars=display_config.max_tool_result_chars,
        )
        self.cancel = cancel
        self.echo = echo
        self.phase_history: list[WorkflowPhase] = []
        self.watch_pull_request = self.config.workflow.watch_pull_request
        self.team = team or team_from_name(self.config.team.name)

        agent_config = self.config.agent
        extra = mcp_options(mcp_servers or {})
        self.coder = CoderAgent(
            client,
            max_turns=agent_config.coder_max_turns,
            model=agent_config.model,
            permission_mode=agent_config.permission_mode,
            system_prompt=self.team.coder_prompt,
            extra=extra,
        )
        self.reviewer = ReviewerAgent(
            client,
            max_turns=agent_config.reviewer_max_turns,
            model=agent_config.model,
            permission_mode=agent_config.permission_mode,
            system_prompt=self.team.reviewer_prompt,
            extra=extra,
        )

    def _enter(self, run: _RunState, phase: WorkflowPhase) -> None:
        run.phases.append(phase)
        logger.info("Task %s entering phase %s", run.task_id, phase.value)

    def _save(self, task: TaskState) -> None:
        try:
            path = self.store.save(task)
        except StateStoreError as exc:
            logger.warning("Could not persist task state %s: %s", task.task_id, exc)
            return
        logger.debug("Task state saved to %s", path)

    async def run(self, options: WorkflowOptions) -> WorkflowResult:
        run = _RunState(task_id=generate_task_id(), options=options)
        self.phase_history = run.phases
        self._enter(run, WorkflowPhase.INITIALIZING)
        try:
            result = await self._execute(run)
        except Exception as exc:
            result = self._fail(run, exc)
        finally:
            self._finish(run)
        return result

    async def _execute(self, run: _RunState) -> WorkflowResult:
        options = run.options
        if options.max_reviews < 1:
            raise ValidationError(f"max_reviews must be at least 1 (got {options.max_reviews})")

        if self.preflight is not None:
            preflight = self.preflight.validate_environment()
            if not preflight.success:
                raise PreflightError(preflight)

        spec_path, spec_content = self._read_spec(options.spec_path)
        base_branch = options.base_branch or self.config.workflow.base_branch or None
        run.worktree = self.workspace.create_worktree(
            run.task_id,
            base_branch=base_branch,
            branch_name=options.branch_name,
        )

        run.task = TaskState(
            task_id=run.task_id,
            spec_path=str(spec_path),
            original_spec=spec_content,
            branch_name=run.worktree.branch_name,
            worktree_info=run.worktree,
            max_iterations=options.max_reviews,
        )
        self._save(run.task)
        self.echo(f"Task {run.task_id} started on branch {run.worktree.branch_name}")
        logger.info("Task %s uses the %s team", run.task_id, self.team.name)

        while True:
            await self._run_turn(run)
            task = run.task
            if run.accepted or task.current_iteration >= task.max_iterations:
                break
            if self.watch_pull_request:
                run.pull_request = await self._find_pull_request(run.worktree)
                if run.pull_request is not None:
                    break
            self.echo("Changes requested, starting next iteration")

        return await self._finalize(run)

    def _read_spec(self, raw_path: str) -> tuple[Path, str]:
        spec_path = Path(raw_path)
        if not spec_path.is_absolute():
            spec_path = self.context.cwd / spec_path
        spec_path = spec_path.resolve()
        if not spec_path.is_file():
            raise SpecFileNotFoundError(spec_path)
        content = spec_path.read_text(encoding="utf-8")
        if not content.strip():
            raise ValidationError(f"Specification file is empty: {spec_path}")
        return spec_path, content

    async def _run_turn(self, run: _RunState) -> None:
        task = run.task
        assert task is not None and run.worktree is not None
        iteration = task.current_iteration + 1
        transcript = build_transcript(task.coder_responses, task.reviewer_responses)
        cwd = run.worktree.path
        self.echo(f"Starting iteration {iteration}/{task.max_iterations}")

        coder_result: AgentResult | None = None
        reviewer_result: AgentResult | None = None
        try:
            self._enter(run, WorkflowPhase.CODING)
            self.echo("Running coder agent...")
            coder_result = await self.coder.run(
                format_coder_prompt(task.original_spec, transcript),
                cwd=cwd,
                env=self.context.env,
                display=self.display,
                cancel=self.cancel,
                echo=self.echo,
            )
            if not coder_result.success:
                raise AgentExecutionError(
                    "Coder agent execution was not successful", client=self.client.name
                )
            self._check_cancelled()

            self._enter(run, WorkflowPhase.REVIEWING)
            self.echo("Running reviewer agent...")
            reviewer_result = await self.reviewer.run(
                format_reviewer_prompt(task.original_spec, handoff_text(coder_result), transcript),
                cwd=cwd,
                env=self.context.env,
                display=self.display,
                cancel=self.cancel,
                echo=self.echo,
            )
            if not reviewer_result.success:
                raise AgentExecutionError(
                    "Reviewer agent execution was not successful", client=self.client.name
                )
        except Exception as exc:
            task.record_failed_turn(coder=coder_result, reviewer=reviewer_result, error=str(exc))
            self._save(task)
            raise

        task.record_turn(coder_result, reviewer_result)
        self._save(task)
        if run.options.debug:
            self._log_turn(run, "coder", coder_result)
            self._log_turn(run, "reviewer", reviewer_result)

        run.accepted = self.verdict(reviewer_result)
        logger.info(
            "Task %s iteration %d verdict: %s",
            task.task_id,
            iteration,
            "approved" if run.accepted else "changes requested",
        )
        self._check_cancelled()

    def _check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise WorkflowCancelledError("Workflow cancelled")

    async def _finalize(self, run: _RunState) -> WorkflowResult:
        task = run.task
        worktree = run.worktree
        assert task is not None and worktree is not None
        self._enter(run, WorkflowPhase.FINALIZING)

        pull_request = run.pull_request or await self._find_pull_request(worktree)
        if pull_request is None and run.accepted:
            pull_request = await self._publish(task, worktree)
        run.pull_request = pull_request

        success = run.accepted or pull_request is not None
        error = None
        if not success:
            error = f"Max iterations ({task.max_iterations}) reached without approval"

        task.finish("succeeded" if success else "failed", error=error)
        self._save(task)
        self._enter(run, WorkflowPhase.SUCCEEDED if success else WorkflowPhase.FAILED)
        return WorkflowResult(
            success=success,
            task_id=task.task_id,
            iterations=task.current_iteration,
            pr_url=pull_request.url if pull_request else None,
            error=error,
        )

    async def _find_pull_request(self, worktree: WorktreeInfo) -> PullRequestInfo | None:
        if self.pr_checker is None:
            return None
        try:
            found = await asyncio.to_thread(
                self.pr_checker.find_open_pull_request,
                worktree.branch_name,
                worktree.base_branch or None,
            )
        except GitHubError as exc:
            logger.warning("Pull request lookup failed: %s", exc)
            return None
        if found is not None:
            self.echo(f"Pull request already open: {found.url}")
        return found

    async def _publish(self, task: TaskState, worktree: WorktreeInfo) -> PullRequestInfo | None:
        if not isinstance(self.pr_checker, PullRequestPublisher):
            return None
        title, body = _pull_request_text(task)
        try:
            await asyncio.to_thread(
                self.workspace.push_branch, worktree, self.config.github.remote
            )
            created = await asyncio.to_thread(
                self.pr_checker.create_pull_request,
                worktree.branch_name,
                worktree.base_branch,
                title,
                body,
            )
        except (GitHubError, GitCommandError, OSError) as exc:
            logger.warning("Could not open a pull request for %s: %s", worktree.branch_name, exc)
            self.echo(f"Approved, but the pull request could not be created: {exc}")
            return None
        self.echo(f"Pull request created: {created.url}")
        return created

    def _fail(self, run: _RunState, exc: Exception) -> WorkflowResult:
        if isinstance(exc, EXPECTED_ERRORS):
            message = str(exc)
        else:
            logger.debug("Unexpected workflow failure", exc_info=True)
            message = f"Unexpected error: {exc}"
        logger.error("Task %s failed: %s", run.task_id, message)

        if run.task is not None:
            run.task.finish("failed", error=message)
            self._save(run.task)
        self._enter(run, WorkflowPhase.FAILED)
        return WorkflowResult(
            success=False,
            task_id=run.task_id,
            iterations=run.task.current_iteration if run.task is not None else 0,
            error=message,
        )

    def _finish(self, run: _RunState) -> None:
        logger.info(
            "Task %s phases: %s",
            run.task_id,
            " -> ".join(phase.value for phase in run.phases),
        )
        if run.task is not None:
            self._log_audit(run)
        if run.worktree is None:
            return
        if not run.options.cleanup:
            self.echo(f"Worktree kept at {run.worktree.path}")
            return
        # Approved work that never reached a pull request lives only on the local branch.
        keep_branch = (
            run.task is not None and run.task.status == "succeeded" and run.pull_request is None
        )
        self.workspace.cleanup_worktree(run.worktree, keep_branch=keep_branch)
        if keep_branch:
            self.echo(f"Branch {run.worktree.branch_name} kept with the approved changes")

    def _debug_options(self, task_id: str, suffix: str = "") -> DebugOptions:
        debug_dir = self.context.cwd / self.config.state.state_dir / "debug"
        if not suffix:
            return DebugOptions(debug_dir=debug_dir)
        return DebugOptions(
            debug_dir=debug_dir, debug_path=debug_dir / f"{task_id}-{suffix}-messages.json"
        )

    def _log_turn(self, run: _RunState, role: str, result: AgentResult) -> None:
        task = run.task
        assert task is not None
        log_debug_messages(
            result.messages,
            DebugMetadata(
                task_id=task.task_id,
                final_response=result.final_response,
                success=result.success,
                cost=result.cost,
                duration=result.duration,
                messages_count=result.message_count,
                options={"role": role, "iteration": task.current_iteration},
            ),
            self._debug_options(task.task_id, f"{role}-{task.current_iteration}"),
        )

    def _log_audit(self, run: _RunState) -> None:
        task = run.task
        assert task is not None
        turns = [*task.coder_responses, *task.reviewer_responses]
        messages = [message for turn in _interleave(task) for message in turn.messages]
        final_response = task.reviewer_responses[-1].final_response if task.reviewer_responses else ""
        log_debug_messages(
            messages,
            DebugMetadata(
                task_id=task.task_id,
                final_response=final_response,
                success=task.status == "succeeded",
                cost=sum(turn.cost for turn in turns),
                duration=sum(turn.duration for turn in turns),
                messages_count=len(messages),
                options={**run.options.to_dict(), "team": self.team.name},
            ),
            self._debug_options(task.task_id),
        )


def _interleave(task: TaskState) -> list[AgentResult]:
    ordered: list[AgentResult] = []
    for index, coder in enumerate(task.coder_responses):
        ordered.append(coder)
        if index < len(task.reviewer_responses):
            ordered.append(task.reviewer_responses[index])
    ordered.extend(task.reviewer_responses[len(task.coder_responses) :])
    return ordered


def _pull_request_text(task: TaskState) -> tuple[str, str]:
    first_line = next(
        (line.strip("# ").strip() for line in task.original_spec.splitlines() if line.strip()),
        task.task_id,
    )
    title = f"Implement {first_line}"[:120]
    review = task.reviewer_responses[-1].final_response if task.reviewer_responses else ""
    body = (
        f"Automated implementation for task `{task.task_id}` "
        f"after {task.current_iteration} review iteration(s).\n\n"
        f"## Final review\n\n{review.strip() or '(no review text)'}\n"
    )
    return title, body
