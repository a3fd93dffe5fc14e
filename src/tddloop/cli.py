from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click

from tddloop import __version__
from tddloop.backends import AgentClient, ClaudeCodeClient, OpenAIResponsesClient
from tddloop.config import (
    CONFIG_FILENAME,
    RuntimeContext,
    TddLoopConfig,
    load_config,
    save_config,
)
from tddloop.github import GitHubClient, GitHubError
from tddloop.log import setup_logger
from tddloop.messages import DisplayOptions, format_execution_summary
from tddloop.preflight import PreflightValidator
from tddloop.state import StateStoreError, TaskStateStore
from tddloop.teams import TEAMS, Team, load_mcp_servers, team_from_name
from tddloop.verdict import verdict_from_name
from tddloop.workflow import TDDWorkflow, WorkflowOptions
from tddloop.workspace import WorktreeManager

logger = logging.getLogger(__name__)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load(config_value: str) -> tuple[RuntimeContext, Path, TddLoopConfig]:
    context = RuntimeContext.from_environment()
    config_path = _resolve_config_path(context.cwd, config_value)
    try:
        config = load_config(config_path)
    except (OSError, TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    return context, config_path, config


def _record_agent_event(event: dict[str, Any]) -> None:
    logger.debug("agent event: %s", json.dumps(event, ensure_ascii=False, default=str))


def _build_client(config: TddLoopConfig) -> AgentClient:
    if config.agent.client == "openai":
        return OpenAIResponsesClient(
            model=config.agent.model or "gpt-5-codex",
            event_hook=_record_agent_event,
        )
    return ClaudeCodeClient(binary=config.agent.binary, event_hook=_record_agent_event)


def _build_pr_checker(
    context: RuntimeContext, config: TddLoopConfig, workspace: WorktreeManager
) -> GitHubClient | None:
    token = context.get(config.github.token_env)
    remote_url = workspace.remote_url(config.github.remote)
    if not token or not remote_url:
        logger.warning("Pull request checks disabled (missing token or remote)")
        return None
    try:
        return GitHubClient.from_remote(token, remote_url, api_url=config.github.api_url)
    except GitHubError as exc:
        logger.warning("Pull request checks disabled: %s", exc)
        return None


def _resolve_team(
    context: RuntimeContext, config: TddLoopConfig, team_name: str | None
) -> tuple[Team, dict[str, Any]]:
    try:
        team = team_from_name(team_name or config.team.name)
        servers: dict[str, Any] = {}
        if config.team.mcp_config:
            mcp_path = _resolve_config_path(context.cwd, config.team.mcp_config)
            servers = load_mcp_servers(mcp_path, team.name)
    except (OSError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    if servers and config.agent.client != "claude":
        logger.warning("MCP servers are only passed to the claude client; ignoring them")
        return team, {}
    return team, servers


def _print_preflight(result: Any) -> None:
    for error in result.errors:
        click.echo(f"error: {error}")
    for warning in result.warnings:
        click.echo(f"warning: {warning}")


@click.group()
@click.version_option(version=__version__, prog_name="tddloop")
def cli() -> None:
    """Test-driven coder/reviewer loop for coding agents."""


@cli.command("init")
@click.option("--client", type=click.Choice(["claude", "openai"]), default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(client: str | None, config_value: str) -> None:
    context, config_path, config = _load(config_value)
    if client:
        config.agent.client = client  # type: ignore[assignment]
        if client == "openai" and not config.agent.model:
            config.agent.model = "gpt-5-codex"
    save_config(config_path, config)
    (context.cwd / config.state.state_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized tddloop in {context.cwd}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent client: {config.agent.client}")
    click.echo(f"State directory: {config.state.state_dir}")


@cli.command("preflight")
@click.option("--quick", is_flag=True, default=False, help="Only check git, token and Python.")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def preflight_command(quick: bool, verbose: bool, config_value: str) -> None:
    setup_logger(verbose=verbose)
    context, _, config = _load(config_value)
    validator = PreflightValidator(context, config)
    if quick:
        if not validator.quick_validation():
            raise click.ClickException("Quick preflight failed")
        click.echo("Quick preflight passed.")
        return

    result = validator.validate_environment()
    _print_preflight(result)
    if not result.success:
        raise click.ClickException(f"Preflight failed with {len(result.errors)} error(s)")
    click.echo("Preflight passed.")


@cli.command("tdd")
@click.argument("spec", type=click.Path(dir_okay=False))
@click.option("--reviews", "max_reviews", type=int, default=None, help="Maximum review iterations.")
@click.option("--branch", "branch_name", default=None, help="Branch name for the task.")
@click.option("--base", "base_branch", default=None, help="Branch to start from.")
@click.option("--team", "team_name", default=None, help="Role prompt set (see `tddloop teams`).")
@click.option("--no-cleanup", is_flag=True, default=False, help="Keep the worktree afterwards.")
@click.option("--skip-preflight", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--debug", is_flag=True, default=False, help="Write per-turn transcripts and a log file.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def tdd_command(
    spec: str,
    max_reviews: int | None,
    branch_name: str | None,
    base_branch: str | None,
    team_name: str | None,
    no_cleanup: bool,
    skip_preflight: bool,
    verbose: bool,
    debug: bool,
    config_value: str,
) -> None:
    context, _, config = _load(config_value)
    log_file = context.cwd / config.state.state_dir / "logs" / "tddloop.log" if debug else None
    setup_logger(verbose=verbose or debug, log_file=log_file)

    try:
        verdict = verdict_from_name(config.workflow.verdict)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    team, mcp_servers = _resolve_team(context, config, team_name)

    workspace = WorktreeManager(
        context.cwd,
        config.workspace.worktrees_dir,
        branch_prefix=config.workflow.branch_prefix,
    )
    display = DisplayOptions(
        show_tool_calls=config.display.show_tool_calls,
        show_timestamps=config.display.show_timestamps,
        verbose=verbose or config.display.verbose,
        max_tool_result_chars=config.display.max_tool_result_chars,
    )
    pr_checker = _build_pr_checker(context, config, workspace)
    workflow = TDDWorkflow(
        context,
        config,
        client=_build_client(config),
        store=TaskStateStore(context.cwd / config.state.state_dir),
        workspace=workspace,
        pr_checker=pr_checker,
        verdict=verdict,
        preflight=None if skip_preflight else PreflightValidator(context, config),
        display=display,
        team=team,
        mcp_servers=mcp_servers,
    )
    options = WorkflowOptions(
        spec_path=spec,
        max_reviews=max_reviews if max_reviews is not None else config.workflow.max_reviews,
        branch_name=branch_name,
        base_branch=base_branch,
        cleanup=config.workflow.cleanup and not no_cleanup,
        debug=debug,
    )
    try:
        result = asyncio.run(workflow.run(options))
    finally:
        if pr_checker is not None:
            pr_checker.close()

    click.echo(f"Task: {result.task_id}")
    click.echo(f"Iterations: {result.iterations}")
    if result.pr_url:
        click.echo(f"Pull request: {result.pr_url}")
    if not result.success:
        raise click.ClickException(result.error or "Workflow failed")
    click.echo("Workflow succeeded.")


@cli.command("teams")
def teams_command() -> None:
    """List the role prompt sets available to `tdd --team`."""
    for name in sorted(TEAMS):
        click.echo(f"{name}: {TEAMS[name].description}")


@cli.command("status")
@click.argument("task_id")
@click.option("--verbose", is_flag=True, default=False, help="Show a summary of every turn.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def status_command(task_id: str, verbose: bool, config_value: str) -> None:
    context, _, config = _load(config_value)
    store = TaskStateStore(context.cwd / config.state.state_dir)
    try:
        state = store.load(task_id)
    except StateStoreError as exc:
        raise click.ClickException(str(exc)) from exc

    payload = {
        "taskId": state.task_id,
        "status": state.status,
        "iterations": f"{state.current_iteration}/{state.max_iterations}",
        "branchName": state.branch_name,
        "worktree": state.worktree_info.path,
        "specPath": state.spec_path,
        "createdAt": state.created_at,
        "updatedAt": state.updated_at,
        "error": state.error,
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
    if not verbose:
        return
    for role, responses in (
        ("coder", state.coder_responses),
        ("reviewer", state.reviewer_responses),
    ):
        for index, response in enumerate(responses, start=1):
            click.echo(f"\n{role} #{index}")
            click.echo(
                format_execution_summary(
                    success=response.success,
                    duration=response.duration,
                    cost=response.cost,
                    message_count=response.message_count,
                    final_response=response.final_response,
                )
            )

