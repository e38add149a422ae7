"""Decoders for the loosely-shaped payloads returned by the execution agent.

Unrecognized shapes are never parse errors: they degrade to an opaque text
result. Where several aliases exist the first one present wins, in the order
they are listed here.
"""
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional
from automation_engine.config.logging import get_logger

TASK_ID_KEYS = ("task_id", "taskId", "id")
TASK_RESULT_KEYS = ("result", "response")
OUTPUT_CONTENT_KEYS = ("Output", "output")
OUTPUT_ERROR_KEYS = ("Error", "error")


class AgentTaskState:
    COMPLETED = "completed"
    FAILED = "failed"
    RUNNING = "running"


@dataclass
class StepOutput:
    content: str
    is_error: bool
    raw: str


def _parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def extract_task_id(body: str) -> Optional[str]:
    """Return the async task id carried by an initial webhook response, if any."""
    parsed = _parse_json(body)
    if not isinstance(parsed, dict):
        return None
    for key in TASK_ID_KEYS:
        value = parsed.get(key)
        if value:
            return str(value)
    return None


def interpret_task_status(status_data: Dict[str, Any]) -> str:
    """Classify a ``/status/{task_id}`` body as completed, failed or still running."""
    logger = get_logger("agent.status")

    status = str(status_data.get("status", "")).lower()
    if status == "completed":
        return AgentTaskState.COMPLETED
    if status == "failed":
        return AgentTaskState.FAILED
    if status in ("running", "pending"):
        return AgentTaskState.RUNNING

    logger.warning("Unknown task status, treating as running", unknown_status=status)
    return AgentTaskState.RUNNING


def extract_task_result(status_data: Dict[str, Any], raw_body: str) -> str:
    for key in TASK_RESULT_KEYS:
        value = status_data.get(key)
        if value:
            return _as_text(value)
    return raw_body


def extract_task_error(status_data: Dict[str, Any]) -> str:
    error = status_data.get("error")
    return _as_text(error) if error else "Unknown error"


def decode_step_output(body: str) -> StepOutput:
    """Pull the step content and error flag out of an agent result body.

    ``{"output": {"Output": ..., "Error": true}}`` and its lowercase variants
    are unwrapped; anything else is kept verbatim as a successful result.
    """
    parsed = _parse_json(body)
    if not isinstance(parsed, dict):
        return StepOutput(content=body, is_error=False, raw=body)

    output = parsed.get("output")
    if not isinstance(output, dict):
        return StepOutput(content=body, is_error=False, raw=body)

    content = None
    for key in OUTPUT_CONTENT_KEYS:
        if output.get(key):
            content = _as_text(output[key])
            break
    if content is None:
        content = json.dumps(output)

    is_error = any(output.get(key) is True for key in OUTPUT_ERROR_KEYS)
    return StepOutput(content=content, is_error=is_error, raw=body)
