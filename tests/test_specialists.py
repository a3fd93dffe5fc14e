import asyncio
from collections.abc import AsyncIterator
from typing import Any

from tddloop.backends.base import AgentClient, AgentOptions
from tddloop.specialists import CoderAgent, ReviewerAgent


class FakeClient(AgentClient):
    def __init__(self) -> None:
        self.prompts: list[str] = []
        self.options: list[AgentOptions] = []

    async def query(self, prompt: str, options: AgentOptions) -> AsyncIterator[dict[str, Any]]:
        self.prompts.append(prompt)
        self.options.append(options)
        yield {"type": "assistant", "message": {"content": [{"type": "text", "text": "planned"}]}}


def test_coder_specialist_runs() -> None:
    client = FakeClient()
    coder = CoderAgent(client, max_turns=8, model="sonnet")

    result = asyncio.run(coder.run("Build it", cwd="/work", env={}, echo=lambda line: None))

    assert coder.role == "coder"
    assert result.final_response == "planned"
    assert client.prompts[0].startswith("You are the Coder/Engineer specialist.")
    assert client.prompts[0].endswith("Build it")
    options = client.options[0]
    assert options.max_turns == 8
    assert options.model == "sonnet"
    assert options.cwd == "/work"
    assert options.permission_mode == "bypassPermissions"


def test_non_positive_turn_cap_means_natural_completion() -> None:
    reviewer = ReviewerAgent(FakeClient(), max_turns=0, model="")

    options = reviewer.build_options(None, None)

    assert options.max_turns is None
    assert options.model is None


def test_system_prompt_override() -> None:
    reviewer = ReviewerAgent(FakeClient(), system_prompt="  Be strict.  ")

    assert reviewer.build_prompt("Review") == "Be strict.\n\nReview"


def test_extra_options_reach_every_call() -> None:
    coder = CoderAgent(FakeClient(), extra={"mcp_config": '{"mcpServers": {}}'})

    first = coder.build_options("/work", None)
    first.extra["other"] = True

    assert coder.build_options("/work", None).extra == {"mcp_config": '{"mcpServers": {}}'}
