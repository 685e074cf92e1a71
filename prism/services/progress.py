from __future__ import annotations

import math
from dataclasses import dataclass

from prism.models.results import ResearchDepth


@dataclass(frozen=True, slots=True)
class ProgressPlan:
    """Percent milestones for one run, sized from observed phase durations."""

    research_start: int
    research_done: int
    phase1_done: int
    phase2_start: int
    phase2_done: int
    phase3_start: int
    phase3_done: int
    phase4_done: tuple[int, int, int]


PROGRESS_PLANS: dict[ResearchDepth, ProgressPlan] = {
    ResearchDepth.STANDARD: ProgressPlan(5, 30, 40, 42, 58, 60, 72, (82, 90, 98)),
    ResearchDepth.DEEP: ProgressPlan(5, 45, 55, 57, 68, 70, 79, (87, 93, 98)),
    ResearchDepth.MANUAL: ProgressPlan(5, 8, 25, 28, 48, 50, 64, (78, 88, 98)),
    # The agent job dominates the timeline.
    ResearchDepth.AGENT: ProgressPlan(3, 70, 78, 79, 85, 86, 90, (94, 96, 98)),
}

REGENERATION_PLAN = ProgressPlan(0, 0, 0, 0, 0, 10, 30, (60, 80, 100))


def plan_for(depth: ResearchDepth) -> ProgressPlan:
    return PROGRESS_PLANS[depth]


class ProgressEstimator:
    """Smoothed percent for a step that reports no granular progress.

    The percent follows a square-root easing curve over ``expected_seconds``
    between ``start`` and ``end``. It approaches but never reaches ``end``,
    and never moves backwards.
    """

    def __init__(self, start: int, end: int, expected_seconds: float):
        if end < start:
            raise ValueError("end must not be below start")
        self.start = start
        self.end = end
        self.expected_seconds = max(expected_seconds, 1e-6)
        self._last = start

    def percent_at(self, elapsed_seconds: float) -> int:
        ratio = min(max(elapsed_seconds, 0.0) / self.expected_seconds, 1.0)
        raw = self.start + (self.end - self.start) * math.sqrt(ratio)
        ceiling = max(self.end - 1, self.start)
        value = min(int(raw), ceiling)
        self._last = max(self._last, value)
        return self._last
