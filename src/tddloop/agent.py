from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import click

from tddloop.backends.base import AgentClient, AgentExecutionError, AgentMessage, AgentOptions
from tddloop.messages import DisplayOptions, process_messages_with_display

logger = logging.getLogger(__name__)

API_KEY_VARS = ("ANTHROPIC_API_KEY", "CLAUDE_API_KEY", "ANTHROPIC_KEY", "CLAUDE_KEY")


@dataclass(slots=True)
class AgentResult:
    messages: list[AgentMessage] = field(default_factory=list)
    final_response: str = ""
    success: bool = True
    cost: float = 0.0
    duration: int = 0

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": list(self.messages),
            "finalResponse": self.final_response,
            "success": self.success,
            "cost": self.cost,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentResult:
        messages = data.get("messages", [])
        return cls(
            messages=list(messages) if isinstance(messages, list) else [],
            final_response=str(data.get("finalResponse", "")),
            success=bool(data.get("success", True)),
            cost=float(data.get("cost", 0.0)),
            duration=int(data.get("duration", 0)),
        )


def force_subscription_auth(env: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of ``env`` that makes the agent CLI use subscription auth.

    Safe to call on every invocation: keys are only removed once.
    """
    cleaned = dict(env)
    for name in API_KEY_VARS:
        if cleaned.pop(name, None) is not None:
            logger.info("Removing %s from agent environment", name)
    cleaned["CLAUDE_USE_SUBSCRIPTION"] = "true"
    return cleaned


def extract_message_text(message: AgentMessage) -> str:
    """Concatenate the text segments of an assistant message; other kinds yield ''."""
    if message.get("type") != "assistant":
        return ""
    payload = message.get("message")
    content = payload.get("content") if isinstance(payload, dict) else message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    return ""


def final_response_from_messages(messages: list[AgentMessage]) -> str:
    for message in reversed(messages):
        text = extract_message_text(message)
        if text:
            return text
    return ""


def reduce_messages(messages: list[AgentMessage], elapsed_ms: int) -> AgentResult:
    result_events = [message for message in messages if message.get("type") == "result"]
    # One failed result event fails the whole call, even if a later one reports success.
    success = not any(bool(event.get("is_error", False)) for event in result_events)
    cost = 0.0
    duration = elapsed_ms
    if result_events:
        result_event = result_events[-1]
        cost = max(0.0, float(result_event.get("total_cost_usd") or 0.0))
        reported = result_event.get("duration_ms")
        if isinstance(reported, (int, float)) and reported >= 0:
            duration = int(reported)
    return AgentResult(
        messages=messages,
        final_response=final_response_from_messages(messages),
        success=success,
        cost=cost,
        duration=max(0, duration),
    )


async def run_agent(
    prompt: str,
    options: AgentOptions | None = None,
    *,
    client: AgentClient,
    display: DisplayOptions | None = None,
    cancel: asyncio.Event | None = None,
    echo: Callable[[str], None] = click.echo,
) -> AgentResult:
    """Issue one streamed agent call and reduce it into an ``AgentResult``.

    Every failure surfaces as ``AgentExecutionError`` carrying only the
    original message text.
    """
    base_options = options or AgentOptions()
    base_env = base_options.env if base_options.env is not None else os.environ
    run_options = dataclasses.replace(base_options, env=force_subscription_auth(base_env))

    started = time.monotonic()
    try:
        messages = await process_messages_with_display(
            client.query(prompt, run_options),
            display,
            echo=echo,
            cancel=cancel,
        )
    except Exception as exc:
        logger.debug("Agent call failed", exc_info=True)
        message = str(exc) or exc.__class__.__name__
        exit_code = exc.exit_code if isinstance(exc, AgentExecutionError) else None
        raise AgentExecutionError(message, client=client.name, exit_code=exit_code) from None

    elapsed_ms = int((time.monotonic() - started) * 1000)
    result = reduce_messages(messages, elapsed_ms)
    logger.info(
        "Agent call finished: success=%s messages=%d cost=%.4f duration=%dms",
        result.success,
        result.message_count,
        result.cost,
        result.duration,
    )
    return result
