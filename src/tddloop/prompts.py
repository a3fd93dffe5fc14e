from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from tddloop.agent import AgentResult

VERDICT_INSTRUCTIONS = """
End your review with exactly one verdict line:

VERDICT: APPROVED
VERDICT: CHANGES_REQUESTED

A single JSON line such as {"verdict": "APPROVED"} is also accepted.
""".strip()

QUALITY_GATES = """
Do not claim the work is finished until all of these pass:
- the full test suite
- the project's linters and type checks
- the build, if the project has one
""".strip()


class PromptFormattingError(ValueError):
    """Raised when a prompt cannot be built from the given inputs."""


@dataclass(slots=True)
class TranscriptEntry:
    iteration: int
    coder_summary: str
    reviewer_feedback: str


def build_transcript(
    coder_responses: Sequence[AgentResult],
    reviewer_responses: Sequence[AgentResult],
) -> list[TranscriptEntry]:
    return [
        TranscriptEntry(
            iteration=index + 1,
            coder_summary=coder.final_response,
            reviewer_feedback=reviewer.final_response,
        )
        for index, (coder, reviewer) in enumerate(zip(coder_responses, reviewer_responses))
    ]


def _render_transcript(transcript: Sequence[TranscriptEntry]) -> str:
    sections: list[str] = []
    for entry in transcript:
        sections.append(
            f"### Iteration {entry.iteration}\n\n"
            f"Coder summary:\n{entry.coder_summary.strip() or '(no summary)'}\n\n"
            f"Reviewer feedback:\n{entry.reviewer_feedback.strip() or '(no feedback)'}"
        )
    return "\n\n".join(sections)


def format_coder_prompt(
    spec_content: str,
    transcript: Sequence[TranscriptEntry] = (),
) -> str:
    if not spec_content or not spec_content.strip():
        raise PromptFormattingError("Specification content cannot be empty")

    if not transcript:
        return f"""You are the CODING AGENT in a test-driven implement and review loop.
A REVIEW AGENT will check your work against the specification below.

## SPECIFICATION

{spec_content.strip()}

## HOW TO WORK

1. Explore: read the relevant code, its conventions and existing tests.
2. Plan: list the functions and interfaces to add and the test scenarios that cover them.
3. Test first: write failing tests, implement the minimum to pass, then refactor.
4. Commit your work on the current branch.

## QUALITY GATES

{QUALITY_GATES}

## HANDOFF

Finish with a short completion report: what you implemented, which tests you
added and the status of every quality gate. The reviewer reads this report."""

    latest = transcript[-1]
    return f"""You are the CODING AGENT in a test-driven implement and review loop.
This is iteration {latest.iteration + 1}. The reviewer requested changes.
Address every point of the latest feedback before anything else.

## LATEST REVIEWER FEEDBACK

{latest.reviewer_feedback.strip() or '(no feedback)'}

## ORIGINAL SPECIFICATION

{spec_content.strip()}

## HISTORY OF PREVIOUS ITERATIONS

{_render_transcript(transcript)}

## QUALITY GATES

{QUALITY_GATES}

## HANDOFF

Commit your changes and finish with a completion report that lists how each
feedback point was addressed and the status of every quality gate."""


def format_reviewer_prompt(
    original_spec: str,
    coder_handoff: str,
    transcript: Sequence[TranscriptEntry] = (),
) -> str:
    if not original_spec or not original_spec.strip():
        raise PromptFormattingError("Original specification cannot be empty")
    if not coder_handoff or not coder_handoff.strip():
        raise PromptFormattingError("Coder handoff cannot be empty")

    history = ""
    if transcript:
        history = f"\n## EARLIER ITERATIONS\n\n{_render_transcript(transcript)}\n"

    return f"""You are the REVIEW AGENT in a test-driven implement and review loop.

## ORIGINAL SPECIFICATION

{original_spec.strip()}

## CODER COMPLETION REPORT

{coder_handoff.strip()}
{history}
## YOUR REVIEW

1. Verify the quality gates yourself by running the commands; do not trust the report.
2. Check that the implementation matches every requirement of the specification.
3. Check that the tests cover both the happy path and the error scenarios.
4. Check that the code follows the conventions of the repository.

Approve only a complete, correct implementation. Otherwise list specific,
actionable issues with file and line references.

{VERDICT_INSTRUCTIONS}"""
