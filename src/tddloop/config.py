from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Literal

from dotenv import dotenv_values

ClientName = Literal["claude", "openai"]
VerdictName = Literal["marker", "always", "never"]

CONFIG_FILENAME = "tddloop.toml"
ENV_FILES = (".env.local", ".env")


@dataclass(slots=True)
class AgentConfig:
    client: ClientName = "claude"
    binary: str = "claude"
    model: str = ""
    # 0 lets the agent run to natural completion.
    coder_max_turns: int = 0
    reviewer_max_turns: int = 0
    permission_mode: str = "bypassPermissions"


@dataclass(slots=True)
class WorkflowConfig:
    max_reviews: int = 3
    cleanup: bool = True
    branch_prefix: str = "tdd/"
    base_branch: str = ""
    verdict: VerdictName = "marker"
    # Stop iterating as soon as an open pull request exists for the branch.
    watch_pull_request: bool = True


@dataclass(slots=True)
class TeamConfig:
    name: str = "tdd"
    # JSON file with "mcpServers" and per-team "teams" entries; "" disables MCP.
    mcp_config: str = ""


@dataclass(slots=True)
class WorkspaceConfig:
    worktrees_dir: str = "../.codex-worktrees"


@dataclass(slots=True)
class StateConfig:
    state_dir: str = ".codex"


@dataclass(slots=True)
class DisplayConfig:
    show_tool_calls: bool = True
    show_timestamps: bool = False
    verbose: bool = False
    max_tool_result_chars: int = 200


@dataclass(slots=True)
class GitHubConfig:
    token_env: str = "GITHUB_TOKEN"
    api_url: str = "https://api.github.com"
    remote: str = "origin"


@dataclass(slots=True)
class PreflightConfig:
    min_python: str = "3.11"
    min_token_length: int = 20
    verify_token: bool = False


@dataclass(slots=True)
class TddLoopConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    team: TeamConfig = field(default_factory=TeamConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    state: StateConfig = field(default_factory=StateConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    preflight: PreflightConfig = field(default_factory=PreflightConfig)

    @classmethod
    def default(cls) -> TddLoopConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TddLoopConfig:
        return cls(
            agent=AgentConfig(**data.get("agent", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            team=TeamConfig(**data.get("team", {})),
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            state=StateConfig(**data.get("state", {})),
            display=DisplayConfig(**data.get("display", {})),
            github=GitHubConfig(**data.get("github", {})),
            preflight=PreflightConfig(**data.get("preflight", {})),
        )

    def to_dict(self) -> dict:
        return {
            "agent": {
                "client": self.agent.client,
                "binary": self.agent.binary,
                "model": self.agent.model,
                "coder_max_turns": self.agent.coder_max_turns,
                "reviewer_max_turns": self.agent.reviewer_max_turns,
                "permission_mode": self.agent.permission_mode,
            },
            "workflow": {
                "max_reviews": self.workflow.max_reviews,
                "cleanup": self.workflow.cleanup,
                "branch_prefix": self.workflow.branch_prefix,
                "base_branch": self.workflow.base_branch,
                "verdict": self.workflow.verdict,
                "watch_pull_request": self.workflow.watch_pull_request,
            },
            "team": {
                "name": self.team.name,
                "mcp_config": self.team.mcp_config,
            },
            "workspace": {
                "worktrees_dir": self.workspace.worktrees_dir,
            },
            "state": {
                "state_dir": self.state.state_dir,
            },
            "display": {
                "show_tool_calls": self.display.show_tool_calls,
                "show_timestamps": self.display.show_timestamps,
                "verbose": self.display.verbose,
                "max_tool_result_chars": self.display.max_tool_result_chars,
            },
            "github": {
                "token_env": self.github.token_env,
                "api_url": self.github.api_url,
                "remote": self.github.remote,
            },
            "preflight": {
                "min_python": self.preflight.min_python,
                "min_token_length": self.preflight.min_token_length,
                "verify_token": self.preflight.verify_token,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TddLoopConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section, values in data.items():
        lines.append(f"[{section}]")
        for key, value in values.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TddLoopConfig:
    if not path.exists():
        return TddLoopConfig.default()
    return TddLoopConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: TddLoopConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")


@dataclass(frozen=True, slots=True)
class RuntimeContext:
    """Ambient inputs shared by every component of a run.

    Only the outermost entry point reads the real process environment; all
    other code receives one of these and treats it as read-only.
    """

    cwd: Path
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_environment(
        cls,
        cwd: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> RuntimeContext:
        root = (cwd or Path.cwd()).resolve()
        merged: dict[str, str] = {}
        # Lowest precedence first: .env, then .env.local, then the real environment.
        for name in reversed(ENV_FILES):
            env_path = root / name
            if not env_path.is_file():
                continue
            for key, value in dotenv_values(env_path).items():
                if value is not None:
                    merged[key] = value
        merged.update(os.environ if environ is None else environ)
        return cls(cwd=root, env=MappingProxyType(merged))

    def get(self, name: str, default: str | None = None) -> str | None:
        value = self.env.get(name)
        if value is None or value == "":
            return default
        return value

    def with_env(self, updates: Mapping[str, str | None]) -> RuntimeContext:
        env = dict(self.env)
        for key, value in updates.items():
            if value is None:
                env.pop(key, None)
            else:
                env[key] = value
        return RuntimeContext(cwd=self.cwd, env=MappingProxyType(env))
