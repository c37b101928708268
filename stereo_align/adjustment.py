"""Operator guidance derived from a finished frame.

Suggestions are the inverse of what was measured: a pattern rolled by +3°
asks for a -3° roll correction. The priority follows the order in which a
rig is adjusted on the bench: left eye pose, then left eye centering, then
right eye pose, then fusion.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from align_pipeline.ap_types import CenteringResult, PatternObservation, PipelineResult, PoseResult
from align_pipeline.config import CenteringSpec


def check_centering(observation: PatternObservation, spec: CenteringSpec) -> Optional[CenteringResult]:
    """Compare the first and last grid markers with their expected image positions."""
    if not observation.sufficient:
        return None
    pts = np.asarray(observation.points, dtype=np.float64).reshape(-1, 2)
    first = pts[0] - np.asarray(spec.expected_first, dtype=np.float64)
    last = pts[-1] - np.asarray(spec.expected_last, dtype=np.float64)
    max_offset = float(max(np.hypot(*first), np.hypot(*last)))
    return CenteringResult(
        is_centered=max_offset <= spec.tolerance_px,
        first_offset=(float(first[0]), float(first[1])),
        last_offset=(float(last[0]), float(last[1])),
        max_offset=max_offset,
        tolerance_px=spec.tolerance_px,
    )


class AdjustmentPriority(str, Enum):
    LEFT_EYE_POSE = "left_eye_pose"
    LEFT_EYE_CENTERING = "left_eye_centering"
    RIGHT_EYE_POSE = "right_eye_pose"
    FUSION = "fusion"
    COMPLETE = "complete"


@dataclass(frozen=True)
class EyeAdjustment:
    roll: float = 0.0
    pitch: float = 0.0
    yaw: float = 0.0
    needs_adjustment: bool = False


@dataclass(frozen=True)
class AdjustmentVectors:
    left: EyeAdjustment
    right: EyeAdjustment
    centering_shift: Optional[tuple[float, float]]
    delta_x: float
    delta_y: float
    priority: AdjustmentPriority


def _eye(pose: PoseResult) -> EyeAdjustment:
    if pose.outcome.is_detection_failure:
        return EyeAdjustment(needs_adjustment=True)
    return EyeAdjustment(-pose.roll, -pose.pitch, -pose.yaw, not pose.passed)


def suggest_adjustment(result: PipelineResult) -> AdjustmentVectors:
    left = _eye(result.left_pose_result)
    right = _eye(result.right_pose_result)

    centering = result.left_centering
    shift = None
    if centering is not None:
        # move the first marker back onto its expected position
        shift = (-centering.first_offset[0], -centering.first_offset[1])

    alignment = result.alignment_result
    dx = dy = 0.0
    if alignment is not None and alignment.mean_dx is not None:
        dx, dy = -alignment.mean_dx, -alignment.mean_dy

    if left.needs_adjustment:
        priority = AdjustmentPriority.LEFT_EYE_POSE
    elif centering is not None and not centering.is_centered:
        priority = AdjustmentPriority.LEFT_EYE_CENTERING
    elif right.needs_adjustment:
        priority = AdjustmentPriority.RIGHT_EYE_POSE
    elif alignment is None or not alignment.passed:
        priority = AdjustmentPriority.FUSION
    else:
        priority = AdjustmentPriority.COMPLETE

    return AdjustmentVectors(left, right, shift, dx, dy, priority)
