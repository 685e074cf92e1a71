from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from prism.models.events import EventType, SSEEvent
from prism.models.results import CamelModel, GroundingSource


def _wire(value: Any) -> Any:
    if isinstance(value, CamelModel):
        return value.to_wire()
    if isinstance(value, list):
        return [_wire(item) for item in value]
    return value


def progress(phase: int, percent: int, message: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.PROGRESS,
        data={"phase": phase, "percent": percent, "message": message},
    )


def phase_result(
    phase: int,
    data: Any,
    grounding_sources: list[GroundingSource] | None = None,
) -> SSEEvent:
    payload: dict[str, Any] = {"phase": phase, "data": _wire(data)}
    if grounding_sources is not None:
        payload["groundingSources"] = _wire(grounding_sources)
    return SSEEvent(event=EventType.PHASE_RESULT, data=payload)


def debug_log(label: str, content: Any) -> SSEEvent:
    return SSEEvent(
        event=EventType.DEBUG_LOG,
        data={
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "label": label,
            "content": _wire(content),
        },
    )


def result(data: Any) -> SSEEvent:
    return SSEEvent(event=EventType.RESULT, data={"data": _wire(data)})


def error(message: str) -> SSEEvent:
    return SSEEvent(event=EventType.ERROR, data={"error": message})
