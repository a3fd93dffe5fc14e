from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from tddloop.backends.base import AgentMessage

logger = logging.getLogger(__name__)

DEFAULT_DEBUG_DIR = Path(".codex") / "debug"


@dataclass(slots=True)
class DebugMetadata:
    task_id: str
    final_response: str
    success: bool
    cost: float
    duration: int
    messages_count: int
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DebugOptions:
    debug_dir: Path = DEFAULT_DEBUG_DIR
    debug_path: Path | None = None


def debug_file_name(task_id: str) -> str:
    return f"{task_id}-messages.json"


def log_debug_messages(
    messages: list[AgentMessage],
    metadata: DebugMetadata,
    options: DebugOptions | None = None,
) -> Path | None:
    """Write the full transcript of a run; failures are reported, never raised."""
    opts = options or DebugOptions()
    target = opts.debug_path or opts.debug_dir / debug_file_name(metadata.task_id)
    payload = {
        "taskId": metadata.task_id,
        "finalResponse": metadata.final_response,
        "success": metadata.success,
        "cost": metadata.cost,
        "duration": metadata.duration,
        "messagesCount": metadata.messages_count,
        "timestamp": datetime.now(UTC).isoformat(timespec="milliseconds"),
        "options": metadata.options,
        "messages": messages,
    }
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(
            json.dumps(payload, ensure_ascii=False, indent=2, default=str),
            encoding="utf-8",
        )
    except (OSError, TypeError, ValueError) as exc:
        logger.warning("Failed to save debug log %s: %s", target, exc)
        return None
    logger.info("Debug log saved: %s", target)
    return target


def load_debug_messages(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))
