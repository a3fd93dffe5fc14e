from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from typing import Any

import click

from tddloop.agent import AgentResult, run_agent
from tddloop.backends.base import AgentClient, AgentOptions
from tddloop.messages import DisplayOptions


class SpecialistAgent:
    role: str = "specialist"
    fallback_prompt: str = "You are a software specialist."

    def __init__(
        self,
        client: AgentClient,
        *,
        max_turns: int | None = None,
        model: str | None = None,
        permission_mode: str = "bypassPermissions",
        system_prompt: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        self.client = client
        # Non-positive caps mean the agent runs until it stops on its own.
        self.max_turns = max_turns if max_turns and max_turns > 0 else None
        self.model = model or None
        self.permission_mode = permission_mode
        self.system_prompt = (system_prompt or self.fallback_prompt).strip()
        # Passed through untouched, e.g. {"mcp_config": "..."} for the Claude CLI.
        self.extra = dict(extra or {})

    def build_prompt(self, instruction: str) -> str:
        if not self.system_prompt:
            return instruction
        return f"{self.system_prompt}\n\n{instruction}"

    def build_options(self, cwd: str | None, env: Mapping[str, str] | None) -> AgentOptions:
        return AgentOptions(
            max_turns=self.max_turns,
            cwd=cwd,
            permission_mode=self.permission_mode,
            model=self.model,
            env=env,
            extra=dict(self.extra),
        )

    async def run(
        self,
        instruction: str,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        display: DisplayOptions | None = None,
        cancel: asyncio.Event | None = None,
        echo: Callable[[str], None] = click.echo,
    ) -> AgentResult:
        return await run_agent(
            self.build_prompt(instruction),
            self.build_options(cwd, env),
            client=self.client,
            display=display,
            cancel=cancel,
            echo=echo,
        )
