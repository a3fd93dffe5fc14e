import asyncio
import json
import re
import subprocess
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import httpx

from tddloop.backends.base import AgentClient, AgentOptions
from tddloop.config import RuntimeContext, TddLoopConfig
from tddloop.github import GitHubClient, PullRequestInfo
from tddloop.messages import DisplayOptions
from tddloop.preflight import PreflightValidator
from tddloop.state import TaskState, TaskStateStore
from tddloop.verdict import never_accept
from tddloop.workflow import (
    TDDWorkflow,
    WorkflowOptions,
    WorkflowPhase,
    WorkflowResult,
    generate_task_id,
)
from tddloop.workspace import WorktreeInfo, WorktreeManager

SPEC = "# Greeting\n\nAdd a greet(name) function returning 'Hello, <name>!'.\n"


def assistant(text: str) -> dict[str, Any]:
    return {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}


def result(is_error: bool = False, cost: float = 0.01) -> dict[str, Any]:
    return {"type": "result", "is_error": is_error, "total_cost_usd": cost, "duration_ms": 100}


def turn(text: str, **kwargs: Any) -> list[Any]:
    return [{"type": "system", "subtype": "init", "tools": []}, assistant(text), result(**kwargs)]


class ScriptedClient(AgentClient):
    name = "scripted"

    def __init__(self, scripts: list[list[Any]]) -> None:
        self.scripts = list(scripts)
        self.prompts: list[str] = []
        self.options: list[AgentOptions] = []

    async def query(self, prompt: str, options: AgentOptions) -> AsyncIterator[dict[str, Any]]:
        self.prompts.append(prompt)
        self.options.append(options)
        for item in self.scripts.pop(0):
            if isinstance(item, Exception):
                raise item
            if callable(item):
                item(options)
                continue
            yield item


class FakeChecker:
    def __init__(self, existing: PullRequestInfo | None = None) -> None:
        self.existing = existing
        self.lookups: list[tuple[str, str | None]] = []
        self.created: list[tuple[str, str, str, str]] = []

    def find_open_pull_request(
        self, head_branch: str, base_branch: str | None = None
    ) -> PullRequestInfo | None:
        self.lookups.append((head_branch, base_branch))
        return self.existing

    def create_pull_request(
        self, head_branch: str, base_branch: str, title: str, body: str
    ) -> PullRequestInfo:
        self.created.append((head_branch, base_branch, title, body))
        return PullRequestInfo(
            number=12,
            url="https://github.com/acme/widgets/pull/12",
            state="open",
            head_branch=head_branch,
            base_branch=base_branch,
            title=title,
        )


class RecordingStore(TaskStateStore):
    def __init__(self, state_dir: Path) -> None:
        super().__init__(state_dir)
        self.snapshots: list[dict[str, Any]] = []

    def save(self, state: TaskState) -> Path:
        self.snapshots.append(json.loads(json.dumps(state.to_dict())))
        return super().save(state)


class LocalWorkspace(WorktreeManager):
    def __init__(self, repo_root: Path) -> None:
        super().__init__(repo_root)
        self.pushed: list[str] = []

    def push_branch(self, info: WorktreeInfo, remote: str = "origin") -> None:
        self.pushed.append(f"{remote}/{info.branch_name}")


def _workflow(
    repo: Path,
    client: AgentClient,
    *,
    pr_checker: Any = None,
    echo: list[str] | None = None,
    config: TddLoopConfig | None = None,
    **kwargs: Any,
) -> tuple[TDDWorkflow, RecordingStore, LocalWorkspace]:
    context = RuntimeContext.from_environment(repo, environ={})
    store = RecordingStore(repo / ".codex")
    workspace = LocalWorkspace(repo)
    lines = echo if echo is not None else []
    workflow = TDDWorkflow(
        context,
        config or TddLoopConfig.default(),
        client=client,
        store=store,
        workspace=workspace,
        pr_checker=pr_checker,
        echo=lines.append,
        **kwargs,
    )
    return workflow, store, workspace


def _run(workflow: TDDWorkflow, repo: Path, **options: Any) -> WorkflowResult:
    spec_path = repo / "SPEC.md"
    if not spec_path.exists():
        spec_path.write_text(SPEC, encoding="utf-8")
    return asyncio.run(workflow.run(WorkflowOptions(spec_path="SPEC.md", **options)))


def _git(cwd: Path, *args: str) -> str:
    proc = subprocess.run(["git", *args], cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout


def _commit_greet(options: AgentOptions) -> None:
    worktree = Path(options.cwd or ".")
    (worktree / "greet.py").write_text(
        "def greet(name):\n    return f'Hello, {name}!'\n", encoding="utf-8"
    )
    _git(worktree, "add", "greet.py")
    _git(worktree, "commit", "-m", "Add greet")


def _assert_turn_counts_in_step(snapshots: list[dict[str, Any]]) -> None:
    for snapshot in snapshots:
        if snapshot["status"] == "failed":
            continue
        assert (
            len(snapshot["coderResponses"])
            == len(snapshot["reviewerResponses"])
            == snapshot["currentIteration"]
        )
        assert 0 <= snapshot["currentIteration"] <= snapshot["maxIterations"]


def test_generate_task_id_format() -> None:
    task_id = generate_task_id(1700000000123)

    assert re.match(r"^task-1700000000123-[a-z0-9]{6}$", task_id)
    assert generate_task_id() != generate_task_id()


def test_approved_run_opens_pull_request(git_repo: Path) -> None:
    client = ScriptedClient([turn("Implemented greet with tests"), turn("All good.\nVERDICT: APPROVED")])
    checker = FakeChecker()
    workflow, store, workspace = _workflow(git_repo, client, pr_checker=checker)

    outcome = _run(workflow, git_repo, max_reviews=1)

    assert outcome.success is True
    assert re.match(r"^task-\d+-[a-z0-9]+$", outcome.task_id)
    assert outcome.iterations == 1
    assert outcome.pr_url == "https://github.com/acme/widgets/pull/12"
    assert outcome.error is None

    assert store.snapshots[0]["status"] == "running"
    assert store.snapshots[0]["currentIteration"] == 0
    saved = store.load(outcome.task_id)
    assert saved.status == "succeeded"
    assert saved.current_iteration <= 1
    assert saved.original_spec == SPEC
    assert store.path_for(outcome.task_id).is_file()
    _assert_turn_counts_in_step(store.snapshots)

    branch = f"tdd/{outcome.task_id}"
    assert checker.lookups == [(branch, "feature/base")]
    assert checker.created[0][0:2] == (branch, "feature/base")
    assert checker.created[0][2] == "Implement Greeting"
    assert workspace.pushed == [f"origin/{branch}"]
    assert not Path(saved.worktree_info.path).exists()
    assert workflow.phase_history == [
        WorkflowPhase.INITIALIZING,
        WorkflowPhase.CODING,
        WorkflowPhase.REVIEWING,
        WorkflowPhase.FINALIZING,
        WorkflowPhase.SUCCEEDED,
    ]


def test_agents_run_inside_the_worktree(git_repo: Path) -> None:
    client = ScriptedClient([turn("done"), turn("VERDICT: APPROVED")])
    workflow, store, _ = _workflow(git_repo, client)

    outcome = _run(workflow, git_repo, max_reviews=1)

    saved = store.load(outcome.task_id)
    assert [options.cwd for options in client.options] == [saved.worktree_info.path] * 2
    assert all(options.max_turns is None for options in client.options)
    assert "CODING AGENT" in client.prompts[0]
    assert "REVIEW AGENT" in client.prompts[1]
    assert "done" in client.prompts[1]


def test_existing_pull_request_counts_as_success(git_repo: Path) -> None:
    existing = PullRequestInfo(
        number=3,
        url="https://github.com/acme/widgets/pull/3",
        state="open",
        head_branch="tdd/x",
        base_branch="feature/base",
    )
    checker = FakeChecker(existing)
    client = ScriptedClient([turn("done"), turn("I opened a pull request myself.")])
    workflow, _, workspace = _workflow(git_repo, client, pr_checker=checker, verdict=never_accept)

    outcome = _run(workflow, git_repo, max_reviews=1)

    assert outcome.success is True
    assert outcome.pr_url == existing.url
    assert checker.created == []
    assert workspace.pushed == []


def test_review_limit_reached_without_approval(git_repo: Path) -> None:
    client = ScriptedClient(
        [
            turn("first attempt"),
            turn("Tests are missing.\nVERDICT: CHANGES_REQUESTED"),
            turn("second attempt"),
            turn("Lint still fails.\nVERDICT: CHANGES_REQUESTED"),
        ]
    )
    checker = FakeChecker()
    workflow, store, _ = _workflow(git_repo, client, pr_checker=checker)

    outcome = _run(workflow, git_repo, max_reviews=2)

    assert outcome.success is False
    assert outcome.iterations == 2
    assert outcome.error == "Max iterations (2) reached without approval"
    assert "Tests are missing." in client.prompts[2]
    assert "first attempt" in client.prompts[2]
    assert checker.created == []
    saved = store.load(outcome.task_id)
    assert saved.status == "failed"
    assert saved.error == outcome.error
    assert len(saved.coder_responses) == len(saved.reviewer_responses) == 2
    _assert_turn_counts_in_step(store.snapshots)


def test_agent_stream_failure_marks_task_failed(git_repo: Path) -> None:
    client = ScriptedClient([[assistant("starting"), RuntimeError("stream broke")]])
    workflow, store, _ = _workflow(git_repo, client)

    outcome = _run(workflow, git_repo, max_reviews=2)

    assert outcome.success is False
    assert outcome.error == "stream broke"
    assert outcome.iterations == 0
    saved = store.load(outcome.task_id)
    assert saved.status == "failed"
    assert saved.error == "stream broke"
    assert saved.coder_responses == []
    assert not Path(saved.worktree_info.path).exists()
    assert workflow.phase_history[-1] == WorkflowPhase.FAILED


def test_unsuccessful_reviewer_result_is_recorded(git_repo: Path) -> None:
    client = ScriptedClient([turn("done"), turn("crashed", is_error=True)])
    workflow, store, _ = _workflow(git_repo, client)

    outcome = _run(workflow, git_repo, max_reviews=1)

    assert outcome.success is False
    assert outcome.error == "Reviewer agent execution was not successful"
    saved = store.load(outcome.task_id)
    assert saved.status == "failed"
    assert len(saved.coder_responses) == 1
    assert len(saved.reviewer_responses) == 1
    assert saved.current_iteration == 0


def test_missing_spec_has_no_side_effects(git_repo: Path) -> None:
    client = ScriptedClient([])
    workflow, store, workspace = _workflow(git_repo, client)

    outcome = asyncio.run(workflow.run(WorkflowOptions(spec_path="NOPE.md")))

    assert outcome.success is False
    assert "Specification file not found" in (outcome.error or "")
    assert store.snapshots == []
    assert not (git_repo / ".codex").exists()
    assert not workspace.worktrees_dir.exists()
    assert client.prompts == []


def test_empty_spec_is_rejected(git_repo: Path) -> None:
    (git_repo / "SPEC.md").write_text("   \n", encoding="utf-8")
    workflow, store, _ = _workflow(git_repo, ScriptedClient([]))

    outcome = _run(workflow, git_repo)

    assert outcome.success is False
    assert "Specification file is empty" in (outcome.error or "")
    assert store.snapshots == []


def test_preflight_failure_blocks_the_run(git_repo: Path) -> None:
    client = ScriptedClient([])
    context = RuntimeContext.from_environment(git_repo, environ={})
    preflight = PreflightValidator(context, TddLoopConfig.default())
    workflow, store, workspace = _workflow(git_repo, client, preflight=preflight)

    outcome = _run(workflow, git_repo)

    assert outcome.success is False
    assert "GITHUB_TOKEN" in (outcome.error or "")
    assert client.prompts == []
    assert store.snapshots == []
    assert not workspace.worktrees_dir.exists()


def test_display_options_do_not_change_state_shape(git_repo: Path) -> None:
    def scripts() -> list[list[Any]]:
        return [
            turn("attempt"),
            turn("VERDICT: CHANGES_REQUESTED"),
            turn("attempt 2"),
            turn("VERDICT: APPROVED"),
        ]

    shapes = []
    for display in (DisplayOptions(), DisplayOptions(verbose=True, show_timestamps=True)):
        lines: list[str] = []
        workflow, store, _ = _workflow(
            git_repo, ScriptedClient(scripts()), echo=lines, display=display
        )
        outcome = _run(workflow, git_repo, max_reviews=3)
        payload = json.loads(store.path_for(outcome.task_id).read_text(encoding="utf-8"))
        shapes.append(
            (
                sorted(payload),
                payload["status"],
                payload["currentIteration"],
                len(payload["coderResponses"]),
                len(payload["reviewerResponses"]),
            )
        )

    assert shapes[0] == shapes[1]
    assert shapes[0][1:] == ("succeeded", 2, 2, 2)


def test_no_cleanup_keeps_worktree_and_debug_writes_transcripts(git_repo: Path) -> None:
    client = ScriptedClient([turn("done"), turn("VERDICT: APPROVED")])
    lines: list[str] = []
    workflow, store, _ = _workflow(git_repo, client, echo=lines)

    outcome = _run(workflow, git_repo, max_reviews=1, cleanup=False, debug=True)

    saved = store.load(outcome.task_id)
    assert Path(saved.worktree_info.path).is_dir()
    assert any("Worktree kept at" in line for line in lines)
    debug_dir = git_repo / ".codex" / "debug"
    audit = json.loads((debug_dir / f"{outcome.task_id}-messages.json").read_text(encoding="utf-8"))
    assert audit["messagesCount"] == 6
    assert audit["success"] is True
    assert audit["options"]["maxReviews"] == 1
    assert (debug_dir / f"{outcome.task_id}-coder-1-messages.json").is_file()
    assert (debug_dir / f"{outcome.task_id}-reviewer-1-messages.json").is_file()
    workflow.workspace.cleanup_worktree(saved.worktree_info)


def test_approved_work_without_pull_request_keeps_the_branch(git_repo: Path) -> None:
    client = ScriptedClient([[_commit_greet, *turn("Implemented greet")], turn("VERDICT: APPROVED")])
    lines: list[str] = []
    workflow, store, workspace = _workflow(git_repo, client, echo=lines)

    outcome = _run(workflow, git_repo, max_reviews=1)

    assert outcome.success is True
    assert outcome.pr_url is None
    saved = store.load(outcome.task_id)
    assert not Path(saved.worktree_info.path).exists()
    assert workspace.branch_exists(saved.branch_name)
    assert "Hello" in _git(git_repo, "show", f"{saved.branch_name}:greet.py")
    assert any("kept with the approved changes" in line for line in lines)


def test_unreadable_github_response_keeps_approved_run_successful(git_repo: Path) -> None:
    http = httpx.Client(
        base_url="https://api.github.com",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway</html>")),
    )
    checker = GitHubClient("ghp_" + "x" * 36, "acme", "widgets", http=http)
    client = ScriptedClient([[_commit_greet, *turn("done")], turn("VERDICT: APPROVED")])
    workflow, store, workspace = _workflow(git_repo, client, pr_checker=checker)

    outcome = _run(workflow, git_repo, max_reviews=1)

    assert outcome.success is True
    assert outcome.error is None
    assert outcome.pr_url is None
    saved = store.load(outcome.task_id)
    assert saved.status == "succeeded"
    assert workspace.pushed == [f"origin/{saved.branch_name}"]
    assert workspace.branch_exists(saved.branch_name)


def test_cancellation_during_coder_stream_fails_the_run(git_repo: Path) -> None:
    cancel = asyncio.Event()
    client = ScriptedClient(
        [[assistant("writing tests"), lambda options: cancel.set(), assistant("more"), result()]]
    )
    workflow, store, _ = _workflow(git_repo, client, cancel=cancel)

    outcome = _run(workflow, git_repo, max_reviews=2)

    assert outcome.success is False
    assert outcome.error == "Workflow cancelled"
    assert len(client.prompts) == 1
    saved = store.load(outcome.task_id)
    assert saved.status == "failed"
    assert saved.error == "Workflow cancelled"
    assert len(saved.coder_responses) == 1
    assert saved.coder_responses[0].message_count == 2
    assert saved.reviewer_responses == []
    assert not Path(saved.worktree_info.path).exists()
    assert not workflow.workspace.branch_exists(saved.branch_name)
    assert workflow.phase_history[-1] == WorkflowPhase.FAILED


def test_pull_request_opened_by_reviewer_ends_the_loop(git_repo: Path) -> None:
    existing = PullRequestInfo(
        number=5,
        url="https://github.com/acme/widgets/pull/5",
        state="open",
        head_branch="tdd/x",
        base_branch="feature/base",
    )
    checker = FakeChecker(existing)
    client = ScriptedClient([turn("done"), turn("Opened the pull request.")])
    workflow, _, _ = _workflow(git_repo, client, pr_checker=checker, verdict=never_accept)

    outcome = _run(workflow, git_repo, max_reviews=3)

    assert outcome.success is True
    assert outcome.iterations == 1
    assert outcome.pr_url == existing.url
    assert len(client.prompts) == 2
    assert len(checker.lookups) == 1


def test_pull_request_watch_can_be_disabled(git_repo: Path) -> None:
    config = TddLoopConfig.default()
    config.workflow.watch_pull_request = False
    checker = FakeChecker()
    client = ScriptedClient([turn("a"), turn("no verdict"), turn("b"), turn("no verdict")])
    workflow, _, _ = _workflow(
        git_repo, client, pr_checker=checker, verdict=never_accept, config=config
    )

    outcome = _run(workflow, git_repo, max_reviews=2)

    assert outcome.success is False
    assert outcome.iterations == 2
    assert len(checker.lookups) == 1


def test_team_prompts_and_mcp_servers_reach_the_agents(git_repo: Path) -> None:
    config = TddLoopConfig.default()
    config.team.name = "frontend"
    client = ScriptedClient([turn("done"), turn("VERDICT: APPROVED")])
    servers = {"context7": {"command": "npx", "args": ["-y", "context7"]}}
    workflow, _, _ = _workflow(git_repo, client, config=config, mcp_servers=servers)

    outcome = _run(workflow, git_repo, max_reviews=1, debug=True)

    assert outcome.success is True
    assert client.prompts[0].startswith("You are a frontend engineer.")
    assert client.prompts[1].startswith("You are a frontend reviewer.")
    for options in client.options:
        assert json.loads(options.extra["mcp_config"]) == {"mcpServers": servers}
    audit_path = git_repo / ".codex" / "debug" / f"{outcome.task_id}-messages.json"
    assert json.loads(audit_path.read_text(encoding="utf-8"))["options"]["team"] == "frontend"
