import json
import re
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from tddloop import __version__
from tddloop.backends.base import AgentClient, AgentOptions
from tddloop.cli import cli
from tddloop.config import load_config


class FakeClient(AgentClient):
    name = "fake"

    async def query(self, prompt: str, options: AgentOptions) -> AsyncIterator[dict[str, Any]]:
        _ = options
        text = "VERDICT: APPROVED" if "REVIEW AGENT" in prompt else "Implemented the feature"
        yield {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}
        yield {"type": "result", "is_error": False, "total_cost_usd": 0.01, "duration_ms": 5}


@pytest.fixture
def cli_repo(git_repo: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(git_repo)
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    monkeypatch.setattr("tddloop.cli._build_client", lambda config: FakeClient())
    return git_repo


def test_version_option() -> None:
    result = CliRunner().invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_init_writes_config(cli_repo: Path) -> None:
    result = CliRunner().invoke(cli, ["init", "--client", "openai"])

    assert result.exit_code == 0
    assert "Agent client: openai" in result.output
    config = load_config(cli_repo / "tddloop.toml")
    assert config.agent.client == "openai"
    assert config.agent.model == "gpt-5-codex"
    assert (cli_repo / ".codex").is_dir()


def test_quick_preflight_fails_without_token(cli_repo: Path) -> None:
    result = CliRunner().invoke(cli, ["preflight", "--quick"])

    assert result.exit_code == 1
    assert "Quick preflight failed" in result.output


def test_full_preflight_lists_errors(cli_repo: Path) -> None:
    result = CliRunner().invoke(cli, ["preflight"])

    assert result.exit_code == 1
    assert "error: GITHUB_TOKEN is not set" in result.output


def test_tdd_run_then_status(cli_repo: Path) -> None:
    (cli_repo / "SPEC.md").write_text("# Greeting\nAdd greet().\n", encoding="utf-8")
    runner = CliRunner()

    run_result = runner.invoke(cli, ["tdd", "SPEC.md", "--reviews", "1", "--skip-preflight"])

    assert run_result.exit_code == 0, run_result.output
    assert "Workflow succeeded." in run_result.output
    match = re.search(r"Task: (task-\d+-[a-z0-9]+)", run_result.output)
    assert match is not None
    task_id = match.group(1)

    status_result = runner.invoke(cli, ["status", task_id, "--verbose"])

    assert status_result.exit_code == 0
    payload = json.loads(status_result.output.split("\n\n")[0])
    assert payload["status"] == "succeeded"
    assert payload["iterations"] == "1/1"
    assert "reviewer #1" in status_result.output


def test_tdd_without_preflight_bypass_fails_cleanly(cli_repo: Path) -> None:
    (cli_repo / "SPEC.md").write_text("# Greeting\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["tdd", "SPEC.md"])

    assert result.exit_code == 1
    assert "Preflight checks failed" in result.output
    assert "Traceback" not in result.output


def test_status_of_unknown_task(cli_repo: Path) -> None:
    result = CliRunner().invoke(cli, ["status", "task-0-zzzzzz"])

    assert result.exit_code == 1
    assert "Task not found: task-0-zzzzzz" in result.output


def test_teams_lists_every_prompt_set() -> None:
    result = CliRunner().invoke(cli, ["teams"])

    assert result.exit_code == 0
    for name in ("frontend", "smart-contract", "standard", "tdd"):
        assert f"{name}: " in result.output


def test_tdd_rejects_unknown_team(cli_repo: Path) -> None:
    (cli_repo / "SPEC.md").write_text("# Greeting\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["tdd", "SPEC.md", "--skip-preflight", "--team", "ops"])

    assert result.exit_code == 1
    assert "Unknown team 'ops'" in result.output


def test_tdd_team_selects_prompts_and_mcp_servers(
    cli_repo: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    client = FakeClient()
    seen: list[tuple[str, AgentOptions]] = []
    original_query = client.query

    def recording_query(prompt: str, options: AgentOptions) -> AsyncIterator[dict[str, Any]]:
        seen.append((prompt, options))
        return original_query(prompt, options)

    monkeypatch.setattr(client, "query", recording_query)
    monkeypatch.setattr("tddloop.cli._build_client", lambda config: client)
    (cli_repo / "mcp.json").write_text(
        json.dumps(
            {
                "mcpServers": {"audit": {"command": "slither-mcp"}, "docs": {"command": "docs"}},
                "teams": {"smart-contract": {"mcps": ["audit"]}},
            }
        ),
        encoding="utf-8",
    )
    (cli_repo / "tddloop.toml").write_text('[team]\nmcp_config = "mcp.json"\n', encoding="utf-8")
    (cli_repo / "SPEC.md").write_text("# Vault\nAdd a withdraw limit.\n", encoding="utf-8")

    result = CliRunner().invoke(
        cli, ["tdd", "SPEC.md", "--reviews", "1", "--skip-preflight", "--team", "smart-contract"]
    )

    assert result.exit_code == 0, result.output
    assert seen[0][0].startswith("You are a smart contract engineer.")
    assert seen[1][0].startswith("You are a smart contract auditor.")
    mcp = json.loads(seen[0][1].extra["mcp_config"])
    assert mcp == {"mcpServers": {"audit": {"command": "slither-mcp"}}}
