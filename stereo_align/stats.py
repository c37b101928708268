from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class StageLatency:
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    @property
    def mean_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def add(self, ms: float) -> None:
        self.count += 1
        self.total_ms += ms
        self.max_ms = max(self.max_ms, ms)


@dataclass
class PipelineStats:
    """Point-in-time copy of the pipeline counters."""

    frames_submitted: int = 0
    frames_completed: int = 0
    frames_rejected: int = 0
    frames_invalid: int = 0
    frames_dropped: int = 0
    detection_failures: int = 0
    stages: dict[str, StageLatency] = field(default_factory=dict)
    total: StageLatency = field(default_factory=StageLatency)
    elapsed_sec: float = 0.0

    @property
    def detection_failure_rate(self) -> float:
        return self.detection_failures / self.frames_completed if self.frames_completed else 0.0

    @property
    def throughput_fps(self) -> float:
        return self.frames_completed / self.elapsed_sec if self.elapsed_sec > 0 else 0.0

    def lines(self) -> list[str]:
        out = [
            f"frames submitted={self.frames_submitted} completed={self.frames_completed} "
            f"rejected={self.frames_rejected} invalid={self.frames_invalid} dropped={self.frames_dropped}",
            f"detection failures={self.detection_failures} rate={self.detection_failure_rate:.1%}",
        ]
        for name, lat in self.stages.items():
            out.append(f"stage {name}: n={lat.count} mean={lat.mean_ms:.2f}ms max={lat.max_ms:.2f}ms")
        out.append(f"end-to-end: mean={self.total.mean_ms:.2f}ms max={self.total.max_ms:.2f}ms")
        out.append(f"throughput: {self.throughput_fps:.2f} fps")
        return out


class StatsRecorder:
    """Thread-safe counters shared by the submitting thread and the stages."""

    def __init__(self, stage_names):
        self._lock = threading.Lock()
        self._stats = PipelineStats(stages={name: StageLatency() for name in stage_names})
        self._first_submit: Optional[float] = None
        self._last_complete: Optional[float] = None

    def submitted(self) -> None:
        with self._lock:
            self._stats.frames_submitted += 1
            if self._first_submit is None:
                self._first_submit = time.perf_counter()

    def rejected(self) -> None:
        with self._lock:
            self._stats.frames_rejected += 1

    def invalid(self) -> None:
        with self._lock:
            self._stats.frames_invalid += 1

    def stage(self, name: str, seconds: float) -> None:
        with self._lock:
            self._stats.stages[name].add(seconds * 1000.0)

    def completed(self, processing_time: float, detection_failed: bool) -> None:
        with self._lock:
            self._stats.frames_completed += 1
            self._stats.total.add(processing_time * 1000.0)
            if detection_failed:
                self._stats.detection_failures += 1
            self._last_complete = time.perf_counter()

    def set_dropped(self, count: int) -> None:
        with self._lock:
            self._stats.frames_dropped = count

    def snapshot(self) -> PipelineStats:
        with self._lock:
            s = self._stats
            elapsed = 0.0
            if self._first_submit is not None and self._last_complete is not None:
                elapsed = max(0.0, self._last_complete - self._first_submit)
            return PipelineStats(
                frames_submitted=s.frames_submitted,
                frames_completed=s.frames_completed,
                frames_rejected=s.frames_rejected,
                frames_invalid=s.frames_invalid,
                frames_dropped=s.frames_dropped,
                detection_failures=s.detection_failures,
                stages={k: StageLatency(v.count, v.total_ms, v.max_ms) for k, v in s.stages.items()},
                total=StageLatency(s.total.count, s.total.total_ms, s.total.max_ms),
                elapsed_sec=elapsed,
            )
