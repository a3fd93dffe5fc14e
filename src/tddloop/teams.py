from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from tddloop.specialists import CoderAgent, ReviewerAgent

logger = logging.getLogger(__name__)

DEFAULT_TEAM = "tdd"


@dataclass(frozen=True, slots=True)
class Team:
    """Role prompts handed to the coder and reviewer of one run."""

    name: str
    description: str
    coder_prompt: str
    reviewer_prompt: str


TEAMS: dict[str, Team] = {
    team.name: team
    for team in (
        Team(
            name="tdd",
            description="Test-first coder with a quality-gate reviewer",
            coder_prompt=CoderAgent.fallback_prompt,
            reviewer_prompt=ReviewerAgent.fallback_prompt,
        ),
        Team(
            name="standard",
            description="General engineering with an architecture-minded review",
            coder_prompt="""
You are a senior software engineer writing production-ready code.
Put correctness first and clarity second; optimise only where it is measured.
Keep each module to one responsibility and make its dependencies explicit.
Address every point of earlier review feedback without regressing working code.
""".strip(),
            reviewer_prompt="""
You are a senior code reviewer guarding production readiness.
Check correctness, error handling and security before style.
Flag only issues that matter to users or maintainers, and explain each one.
""".strip(),
        ),
        Team(
            name="frontend",
            description="Component UI work reviewed for accessibility and performance",
            coder_prompt="""
You are a frontend engineer.
Build component-based UI that stays responsive across viewport sizes.
Follow accessibility best practices and keep bundle size in check.
""".strip(),
            reviewer_prompt="""
You are a frontend reviewer.
Exercise the UI components and their interactions at several viewport sizes.
Check accessibility compliance and look for rendering or bundle-size regressions.
""".strip(),
        ),
        Team(
            name="smart-contract",
            description="Contract development with a security audit as review",
            coder_prompt="""
You are a smart contract engineer.
Treat every external call as hostile and guard state changes against reentrancy.
Enforce role-based access control and keep gas usage predictable.
Write tests for every state transition, including the failure paths.
""".strip(),
            reviewer_prompt="""
You are a smart contract auditor.
Look for reentrancy, missing access control and unsafe arithmetic.
Verify the tests cover failure paths and that gas costs stay bounded.
""".strip(),
        ),
    )
}


def team_from_name(name: str) -> Team:
    try:
        return TEAMS[name]
    except KeyError as exc:
        known = ", ".join(sorted(TEAMS))
        raise ValueError(f"Unknown team {name!r} (expected one of: {known})") from exc


def load_mcp_servers(path: Path, team: str) -> dict[str, dict[str, Any]]:
    """Return the MCP servers a team enables in a JSON config file.

    The file uses the agent CLI's ``mcpServers`` mapping plus a ``teams``
    mapping naming the servers each team may use::

        {"mcpServers": {"context7": {"command": "npx", "args": ["-y", "ctx7"]}},
         "teams": {"tdd": {"mcps": ["context7"]}}}
    """
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"MCP config must be a JSON object: {path}")
    servers = raw.get("mcpServers") or {}
    teams = raw.get("teams") or {}
    if not isinstance(servers, dict) or not isinstance(teams, dict):
        raise ValueError(f"MCP config has malformed 'mcpServers' or 'teams': {path}")

    entry = teams.get(team)
    if not isinstance(entry, dict):
        raise ValueError(f"Team {team!r} not found in MCP config {path}")

    enabled: dict[str, dict[str, Any]] = {}
    for server_name in entry.get("mcps") or []:
        server = servers.get(server_name)
        if server is None:
            logger.warning("Team %s enables unknown MCP server %s", team, server_name)
            continue
        if not isinstance(server, dict) or not isinstance(server.get("command"), str):
            raise ValueError(f"MCP server {server_name!r} needs a 'command' string")
        enabled[server_name] = dict(server)
    return enabled


def mcp_options(servers: Mapping[str, Any]) -> dict[str, Any]:
    """Agent option extras that pass ``servers`` to the Claude CLI."""
    if not servers:
        return {}
    return {"mcp_config": json.dumps({"mcpServers": dict(servers)})}
