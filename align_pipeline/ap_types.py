from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import numpy as np


@dataclass
class Frame:
    frame_id: int
    left_image: Any  # numpy array
    right_image: Any  # numpy array
    submitted_at: float


@dataclass(frozen=True)
class Blob:
    label: int
    centroid: tuple[float, float]
    area: float
    bbox: tuple[int, int, int, int]  # x, y, w, h
    circularity: float


@dataclass(frozen=True)
class PatternObservation:
    points: Optional[np.ndarray]  # (rows*cols, 2) float32, row-major
    blobs_found: int = 0
    recovered: int = 0
    reason: str = ""

    @property
    def sufficient(self) -> bool:
        return self.points is not None

    @classmethod
    def insufficient(cls, reason: str, blobs_found: int = 0) -> "PatternObservation":
        return cls(None, blobs_found=blobs_found, reason=reason)


class Outcome(str, Enum):
    PASSED = "passed"
    FAILED_TOLERANCE = "failed_tolerance"
    INSUFFICIENT_OBSERVATION = "insufficient_observation"
    DEGENERATE = "degenerate"

    @property
    def is_detection_failure(self) -> bool:
        return self in (Outcome.INSUFFICIENT_OBSERVATION, Outcome.DEGENERATE)


@dataclass(frozen=True)
class PoseResult:
    roll: float
    pitch: float
    yaw: float
    outcome: Outcome
    reprojection_error: Optional[float] = None
    rvec: Any = None
    tvec: Any = None

    @property
    def passed(self) -> bool:
        return self.outcome is Outcome.PASSED

    @classmethod
    def failed(cls, outcome: Outcome) -> "PoseResult":
        return cls(0.0, 0.0, 0.0, outcome)


@dataclass(frozen=True)
class AlignmentResult:
    outcome: Outcome
    mean_dx: Optional[float] = None
    mean_dy: Optional[float] = None
    rms: Optional[float] = None
    p95: Optional[float] = None
    max_err: Optional[float] = None
    rms_mm: Optional[float] = None
    p95_mm: Optional[float] = None
    max_mm: Optional[float] = None
    depth_mm: Optional[float] = None
    corner_count: int = 0

    @property
    def passed(self) -> bool:
        return self.outcome is Outcome.PASSED


@dataclass(frozen=True)
class CenteringResult:
    is_centered: bool
    first_offset: tuple[float, float]
    last_offset: tuple[float, float]
    max_offset: float
    tolerance_px: float


@dataclass(frozen=True)
class PipelineResult:
    frame_id: int
    processing_time: float  # seconds, submission -> completion
    left_pose_result: PoseResult
    right_pose_result: PoseResult
    alignment_result: Optional[AlignmentResult]
    left_centering: Optional[CenteringResult] = None

    @property
    def detection_failed(self) -> bool:
        outcomes = [self.left_pose_result.outcome, self.right_pose_result.outcome]
        if self.alignment_result is not None:
            outcomes.append(self.alignment_result.outcome)
        return any(o.is_detection_failure for o in outcomes)
