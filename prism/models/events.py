from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    PROGRESS = "progress"
    PHASE_RESULT = "phase_result"
    DEBUG_LOG = "debug_log"
    RESULT = "result"
    ERROR = "error"


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return {"type": self.event.value, **self.data}

    def to_json(self) -> str:
        return json.dumps(self.payload(), ensure_ascii=False)
