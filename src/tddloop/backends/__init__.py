from tddloop.backends.base import (
    AgentClient,
    AgentEventHook,
    AgentExecutionError,
    AgentMessage,
    AgentOptions,
)
from tddloop.backends.claude import ClaudeCodeClient
from tddloop.backends.openai_sdk import OpenAIResponsesClient

__all__ = [
    "AgentClient",
    "AgentEventHook",
    "AgentExecutionError",
    "AgentMessage",
    "AgentOptions",
    "ClaudeCodeClient",
    "OpenAIResponsesClient",
]
