"""Progress tracking for the build pipeline stages."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass
class StageProgress:
    stage: str
    status: str = "pending"  # "pending" | "running" | "completed" | "failed" | "skipped"
    start_time: float | None = None
    end_time: float | None = None
    detail: str = ""
    error: str | None = None

    @property
    def duration(self) -> float | None:
        if self.start_time is not None and self.end_time is not None:
            return round(self.end_time - self.start_time, 2)
        return None


class ProgressTracker:
    """Track the status and timing of each pipeline stage."""

    def __init__(self) -> None:
        self.stages: list[StageProgress] = []
        self._by_name: dict[str, StageProgress] = {}
        self.callbacks: list[Callable[[StageProgress], None]] = []

    def start(self, stage: str) -> None:
        p = StageProgress(stage=stage, status="running", start_time=time.monotonic())
        self.stages.append(p)
        self._by_name[stage] = p
        self._notify(p)

    def complete(self, stage: str, detail: str = "") -> None:
        p = self._by_name.get(stage)
        if p:
            p.status = "completed"
            p.end_time = time.monotonic()
            p.detail = detail
            self._notify(p)

    def fail(self, stage: str, error: str) -> None:
        p = self._by_name.get(stage)
        if p:
            p.status = "failed"
            p.end_time = time.monotonic()
            p.error = error
            self._notify(p)

    def skip(self, stage: str, reason: str) -> None:
        p = StageProgress(stage=stage, status="skipped", detail=reason)
        self.stages.append(p)
        self._by_name[stage] = p
        self._notify(p)

    def status_of(self, stage: str) -> str:
        p = self._by_name.get(stage)
        return p.status if p else "pending"

    @property
    def failed_stage(self) -> str | None:
        for p in self.stages:
            if p.status == "failed":
                return p.stage
        return None

    def get_summary(self) -> dict[str, Any]:
        total_duration = sum(p.duration or 0 for p in self.stages)
        return {
            "stages": [
                {
                    "stage": p.stage,
                    "status": p.status,
                    "duration": p.duration,
                    "detail": p.detail,
                    "error": p.error,
                }
                for p in self.stages
            ],
            "failed_stage": self.failed_stage,
            "total_duration": round(total_duration, 2),
        }

    def _notify(self, p: StageProgress) -> None:
        for cb in self.callbacks:
            try:
                cb(p)
            except Exception:
                logger.debug("Progress callback error for stage %s", p.stage, exc_info=True)
