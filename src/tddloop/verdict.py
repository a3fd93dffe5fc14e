from __future__ import annotations

import json
import re
from collections.abc import Callable

from tddloop.agent import AgentResult, extract_message_text

VerdictPredicate = Callable[[AgentResult], bool]

APPROVED = "APPROVED"
CHANGES_REQUESTED = "CHANGES_REQUESTED"

VERDICT_MARKER = re.compile(r"^\W*VERDICT\W*:\s*\**\s*([A-Z_]+)", re.IGNORECASE | re.MULTILINE)


def _review_texts(result: AgentResult) -> list[str]:
    texts = [extract_message_text(message) for message in result.messages]
    texts = [text for text in texts if text]
    if result.final_response and result.final_response not in texts:
        texts.append(result.final_response)
    return texts


def _structured_verdict(text: str) -> str | None:
    found: str | None = None
    for line in text.splitlines():
        candidate = line.strip().strip("`")
        if not (candidate.startswith("{") and candidate.endswith("}")):
            continue
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and isinstance(payload.get("verdict"), str):
            found = payload["verdict"]
    return found


def parse_verdict(text: str) -> str | None:
    """Return the normalised verdict named in ``text``, or None.

    A JSON line carrying ``"verdict"`` takes precedence over ``VERDICT:`` markers;
    among several of the same kind the last one wins.
    """
    structured = _structured_verdict(text)
    if structured is not None:
        return structured.strip().upper()
    markers = VERDICT_MARKER.findall(text)
    if markers:
        return markers[-1].upper()
    return None


def marker_verdict(result: AgentResult) -> bool:
    verdict: str | None = None
    for text in _review_texts(result):
        verdict = parse_verdict(text) or verdict
    return verdict == APPROVED


def always_accept(result: AgentResult) -> bool:
    return True


def never_accept(result: AgentResult) -> bool:
    return False


VERDICTS: dict[str, VerdictPredicate] = {
    "marker": marker_verdict,
    "always": always_accept,
    "never": never_accept,
}


def verdict_from_name(name: str) -> VerdictPredicate:
    try:
        return VERDICTS[name]
    except KeyError as exc:
        known = ", ".join(sorted(VERDICTS))
        raise ValueError(f"Unknown verdict mode {name!r} (expected one of: {known})") from exc
