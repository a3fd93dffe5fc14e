from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

from tddloop.backends.base import (
    AgentClient,
    AgentEventHook,
    AgentExecutionError,
    AgentMessage,
    AgentOptions,
)


class ClaudeCodeClient(AgentClient):
    """Runs the Claude Code CLI in print mode and streams its JSON events."""

    name = "claude"

    def __init__(self, binary: str = "claude", event_hook: AgentEventHook | None = None) -> None:
        self.binary = binary
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, prompt: str, options: AgentOptions) -> list[str]:
        command = [self.binary, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if options.max_turns is not None:
            command.extend(["--max-turns", str(options.max_turns)])
        if options.permission_mode:
            command.extend(["--permission-mode", options.permission_mode])
        if options.model:
            command.extend(["--model", options.model])
        for key, value in options.extra.items():
            flag = "--" + key.replace("_", "-")
            if isinstance(value, bool):
                if value:
                    command.append(flag)
            elif isinstance(value, (list, tuple)):
                command.extend([flag, *[str(item) for item in value]])
            else:
                command.extend([flag, str(value)])
        return command

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def query(self, prompt: str, options: AgentOptions) -> AsyncIterator[AgentMessage]:
        command = self.build_command(prompt, options)
        self._emit(
            {
                "event": "agent_cli_start",
                "command": command[:2],
                "cwd": options.cwd,
                "max_turns": options.max_turns,
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=options.cwd,
                env=dict(options.env) if options.env is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AgentExecutionError(
                f"Claude binary not found: {self.binary}", client=self.name
            ) from exc

        if process.stdout is None:
            raise AgentExecutionError("Claude CLI did not expose stdout.", client=self.name)

        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                self._emit({"event": "agent_json_parse_fallback", "line": line[:200]})
                continue

            if not isinstance(event, dict):
                self._emit({"event": "agent_json_parse_fallback", "line": line[:200]})
                continue
            self._emit({"event": "agent_json_event", "type": str(event.get("type", ""))})
            yield event

        if parse_buffer:
            self._emit({"event": "agent_json_buffer_flush", "bytes": len(parse_buffer)})

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        self._emit({"event": "agent_cli_exit", "exit_code": return_code})
        if return_code != 0:
            raise AgentExecutionError(
                f"Claude CLI failed with exit code {return_code}: {stderr_output}",
                client=self.name,
                exit_code=return_code,
            )
