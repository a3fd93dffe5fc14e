from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import click

from tddloop.backends.base import AgentMessage

logger = logging.getLogger(__name__)

TOOL_INPUT_PREVIEW_KEYS = 3
TOOL_INPUT_VALUE_CHARS = 50


@dataclass(slots=True)
class DisplayOptions:
    show_tool_calls: bool = True
    show_timestamps: bool = False
    verbose: bool = False
    max_tool_result_chars: int = 200


def truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return f"{text[:limit]}..."


def _content_blocks(message: AgentMessage) -> Any:
    payload = message.get("message")
    if isinstance(payload, dict):
        return payload.get("content")
    return message.get("content")


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
            else:
                parts.append(json.dumps(item, ensure_ascii=False, default=str))
        return " ".join(parts)
    if content is None:
        return ""
    return str(content)


def format_tool_call(block: dict[str, Any]) -> str:
    name = str(block.get("name") or "unknown")
    tool_id = str(block.get("id") or "")
    preview = ""
    tool_input = block.get("input")
    if isinstance(tool_input, dict):
        pairs = []
        for key in list(tool_input)[:TOOL_INPUT_PREVIEW_KEYS]:
            pairs.append(f"{key}: {truncate(str(tool_input[key]), TOOL_INPUT_VALUE_CHARS)}")
        preview = ", ".join(pairs)
    suffix = f" [{tool_id}]" if tool_id else ""
    return f"tool call {name}({preview}){suffix}"


def _format_assistant(message: AgentMessage, options: DisplayOptions) -> str | None:
    content = _content_blocks(message)
    if isinstance(content, str):
        return f"assistant: {content}" if content.strip() else None
    parts: list[str] = []
    if isinstance(content, list):
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                parts.append(block["text"].strip())
            elif block.get("type") == "tool_use" and options.show_tool_calls:
                parts.append(format_tool_call(block))
    parts = [part for part in parts if part]
    if parts:
        return "assistant: " + " | ".join(parts)
    if options.verbose:
        return f"assistant: {json.dumps(content, ensure_ascii=False, default=str)}"
    return None


def _format_user(message: AgentMessage, options: DisplayOptions) -> str | None:
    content = _content_blocks(message)
    if isinstance(content, str):
        return f"user: {content}" if options.verbose else None
    parts: list[str] = []
    if isinstance(content, list):
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "tool_result" and options.show_tool_calls:
                text = _tool_result_text(block.get("content")).replace("\n", " ")
                marker = "tool error" if block.get("is_error") else "tool result"
                parts.append(f"{marker}: {truncate(text, options.max_tool_result_chars)}")
            elif block.get("type") == "text" and options.verbose:
                parts.append(str(block.get("text", "")))
    if parts:
        return "user: " + " | ".join(parts)
    return None


def _format_system(message: AgentMessage, options: DisplayOptions) -> str | None:
    if not options.verbose:
        return None
    tools = message.get("tools")
    tool_count = len(tools) if isinstance(tools, list) else 0
    subtype = message.get("subtype") or "system"
    model = message.get("model")
    details = f"{tool_count} tools available"
    if model:
        details = f"{details}, model {model}"
    return f"system: {subtype} ({details})"


def _format_result(message: AgentMessage) -> str:
    status = "failed" if message.get("is_error") else "success"
    duration = message.get("duration_ms") or 0
    cost = float(message.get("total_cost_usd") or 0.0)
    return f"result: {status} | duration {duration}ms | cost ${cost:.4f}"


def format_message_for_display(
    message: AgentMessage,
    index: int,
    options: DisplayOptions | None = None,
) -> str | None:
    """Render one stream event as a single progress line, or None to skip it."""
    opts = options or DisplayOptions()
    kind = message.get("type")
    if kind == "assistant":
        body = _format_assistant(message, opts)
    elif kind == "user":
        body = _format_user(message, opts)
    elif kind == "system":
        body = _format_system(message, opts)
    elif kind == "result":
        body = _format_result(message)
    elif opts.verbose:
        body = f"unknown message: {json.dumps(message, ensure_ascii=False, default=str)}"
    else:
        body = None

    if body is None:
        return None
    prefix = f"{index + 1}. "
    if opts.show_timestamps:
        stamp = datetime.now(UTC).replace(microsecond=0).isoformat()
        prefix = f"[{stamp}] {prefix}"
    return f"{prefix}{body}"


async def process_messages_with_display(
    stream: AsyncIterator[AgentMessage],
    options: DisplayOptions | None = None,
    *,
    echo: Callable[[str], None] = click.echo,
    cancel: asyncio.Event | None = None,
) -> list[AgentMessage]:
    """Drain ``stream`` once, printing progress and buffering every message.

    When ``cancel`` is set the stream is abandoned after the message in hand
    and whatever was buffered so far is returned.
    """
    opts = options or DisplayOptions()
    messages: list[AgentMessage] = []
    cancelled = False
    async for message in stream:
        messages.append(message)
        line = format_message_for_display(message, len(messages) - 1, opts)
        if line:
            echo(line)
        if cancel is not None and cancel.is_set():
            cancelled = True
            break

    if cancelled:
        logger.info("Agent stream cancelled after %d message(s)", len(messages))
        close = getattr(stream, "aclose", None)
        if close is not None:
            await close()
    return messages


def format_execution_summary(
    *,
    success: bool,
    duration: int,
    cost: float,
    message_count: int,
    final_response: str,
) -> str:
    return "\n".join(
        [
            f"Status: {'success' if success else 'failed'}",
            f"Duration: {duration}ms",
            f"Cost: ${cost:.4f}",
            f"Messages: {message_count}",
            f"Has final response: {'yes' if final_response.strip() else 'no'}",
        ]
    )
