from __future__ import annotations

import time
from collections.abc import AsyncIterator
from typing import Any

from openai import AsyncOpenAI

from tddloop.backends.base import (
    AgentClient,
    AgentEventHook,
    AgentExecutionError,
    AgentMessage,
    AgentOptions,
)


class OpenAIResponsesClient(AgentClient):
    """Streams a Responses API call and reshapes it into agent message events.

    The service has no tool loop of its own here, so a run yields one system
    event, one assistant event per completed output text and a closing result.
    """

    name = "openai"

    def __init__(
        self,
        *,
        model: str = "gpt-5-codex",
        client: Any | None = None,
        event_hook: AgentEventHook | None = None,
    ) -> None:
        self.model = model
        self._client = client
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _resolve_client(self, options: AgentOptions) -> Any:
        if self._client is not None:
            return self._client
        api_key = None
        if options.env is not None:
            api_key = options.env.get("OPENAI_API_KEY") or None
        return AsyncOpenAI(api_key=api_key)

    @staticmethod
    def _text_message(text: str) -> AgentMessage:
        return {
            "type": "assistant",
            "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
        }

    async def query(self, prompt: str, options: AgentOptions) -> AsyncIterator[AgentMessage]:
        model_name = options.model or self.model
        owned = self._client is None
        client = self._resolve_client(options)
        self._emit({"event": "agent_cli_start", "client": self.name, "model": model_name})
        try:
            async for message in self._stream(client, prompt, model_name, options):
                yield message
        finally:
            if owned:
                await client.close()
        self._emit({"event": "agent_cli_exit", "client": self.name, "exit_code": 0})

    async def _stream(
        self, client: Any, prompt: str, model_name: str, options: AgentOptions
    ) -> AsyncIterator[AgentMessage]:
        started = time.monotonic()
        yield {
            "type": "system",
            "subtype": "init",
            "model": model_name,
            "cwd": options.cwd,
            "tools": [],
        }

        last_text = ""
        stream = await client.responses.create(
            model=model_name,
            input=[{"role": "user", "content": prompt}],
            stream=True,
        )
        async for event in stream:
            event_type = str(getattr(event, "type", ""))
            self._emit({"event": "agent_json_event", "type": event_type})
            if event_type == "response.output_text.done":
                last_text = str(getattr(event, "text", "") or "")
                if last_text:
                    yield self._text_message(last_text)
            elif event_type in {"response.failed", "error"}:
                detail = getattr(event, "message", None) or event_type
                raise AgentExecutionError(f"OpenAI response failed: {detail}", client=self.name)
            elif event_type == "response.completed":
                response = getattr(event, "response", None)
                usage = getattr(response, "usage", None)
                yield {
                    "type": "result",
                    "subtype": "success",
                    "is_error": False,
                    "duration_ms": int((time.monotonic() - started) * 1000),
                    "total_cost_usd": 0.0,
                    "num_turns": 1,
                    "result": last_text,
                    "usage": {
                        "input_tokens": getattr(usage, "input_tokens", 0) or 0,
                        "output_tokens": getattr(usage, "output_tokens", 0) or 0,
                    },
                }
