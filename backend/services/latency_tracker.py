"""
Execution latency tracking.

Each provider attempt is timed stage by stage (quote -> build -> sign ->
submit -> verify). The timings are stamped onto the attempt itself and
folded into a bounded per-provider window for the health endpoint.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional

from utils.logger import get_logger

logger = get_logger("latency_tracker")

STAGES = ("quote", "build", "sign", "submit", "verify")


@dataclass
class StageTimer:
    """Tracks timing for individual execution stages."""

    stages: dict = field(default_factory=dict)  # stage_name -> duration_ms
    _current_stage: Optional[str] = None
    _stage_start: Optional[float] = None
    _pipeline_start: float = field(default_factory=time.monotonic)

    def start_stage(self, name: str):
        self.end_stage()
        self._current_stage = name
        self._stage_start = time.monotonic()

    def end_stage(self):
        if self._current_stage and self._stage_start is not None:
            elapsed_ms = (time.monotonic() - self._stage_start) * 1000
            # A re-quote adds to the earlier quote time.
            self.stages[self._current_stage] = round(self.stages.get(self._current_stage, 0.0) + elapsed_ms, 2)
        self._current_stage = None
        self._stage_start = None

    @property
    def current_stage(self) -> Optional[str]:
        return self._current_stage

    def finish(self) -> dict:
        self.end_stage()
        self.stages["total"] = round((time.monotonic() - self._pipeline_start) * 1000, 2)
        return dict(self.stages)


def _percentile(values: list, pct: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    return ordered[min(len(ordered) - 1, int(round(pct * (len(ordered) - 1))))]


class LatencyTracker:
    """Rolling per-provider, per-stage latency summary."""

    def __init__(self, window: int = 200):
        self.window = window
        self._samples: dict[str, dict[str, Deque[float]]] = {}
        self._outcomes: dict[str, dict[str, int]] = {}

    def record(self, provider_id: str, stages: dict, outcome: str):
        per_stage = self._samples.setdefault(provider_id, {})
        for stage, duration in stages.items():
            per_stage.setdefault(stage, deque(maxlen=self.window)).append(float(duration))
        counts = self._outcomes.setdefault(provider_id, {})
        counts[outcome] = counts.get(outcome, 0) + 1
        logger.debug("Attempt timings", provider=provider_id, outcome=outcome, **stages)

    def get_stats(self) -> dict:
        stats = {}
        for provider_id, per_stage in self._samples.items():
            stats[provider_id] = {
                "outcomes": dict(self._outcomes.get(provider_id, {})),
                "stages": {
                    stage: {
                        "count": len(values),
                        "avg_ms": round(sum(values) / len(values), 2) if values else 0.0,
                        "p95_ms": round(_percentile(list(values), 0.95), 2),
                    }
                    for stage, values in per_stage.items()
                },
            }
        return stats


latency_tracker = LatencyTracker()
