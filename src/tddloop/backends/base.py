from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

AgentMessage = dict[str, Any]
AgentEventHook = Callable[[dict[str, Any]], None]


class AgentExecutionError(RuntimeError):
    """Raised for every failure that crosses the agent boundary."""

    def __init__(
        self,
        message: str,
        *,
        client: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.client = client
        self.exit_code = exit_code


@dataclass(slots=True)
class AgentOptions:
    max_turns: int | None = None
    cwd: str | None = None
    permission_mode: str = "bypassPermissions"
    model: str | None = None
    env: Mapping[str, str] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"permissionMode": self.permission_mode}
        if self.max_turns is not None:
            payload["maxTurns"] = self.max_turns
        if self.cwd:
            payload["cwd"] = self.cwd
        if self.model:
            payload["model"] = self.model
        payload.update(self.extra)
        return payload


class AgentClient(ABC):
    name: str = "agent"

    @abstractmethod
    def query(self, prompt: str, options: AgentOptions) -> AsyncIterator[AgentMessage]:
        """Dispatch one agent call and stream its structured messages."""
