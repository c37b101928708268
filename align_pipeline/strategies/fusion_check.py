import logging
from typing import Optional

import cv2
import numpy as np

from ..ap_types import AlignmentResult, Outcome
from ..config import FusionThresholds
from ..errors import ConfigurationError


logger = logging.getLogger(__name__)


def percentile(values: np.ndarray, p: float) -> float:
    """Nearest-rank percentile: element ``round(p * (n - 1))`` of the sorted values."""
    v = np.sort(np.asarray(values, dtype=np.float64).reshape(-1))
    if v.size == 0:
        raise ValueError("percentile of an empty sequence")
    idx = int(round(p * (v.size - 1)))
    return float(v[min(max(idx, 0), v.size - 1)])


class FusionChecker:
    """
    Strategy: measure how well the two eyes' rectified images coincide.

    Both eyes must show the same fiducial: the lowest id visible in both
    images is used, and corner ``i`` of the left eye is compared with corner
    ``i`` of the right eye. Pixel offsets are converted to millimetres on the
    target plane with ``mm = px * Z / f``.

    Args:
        locator: object with ``locate_all(image) -> {id: corners}`` and ``object_points``
        camera_matrix: rectified projection (``P1``) or its 3x3 part
        baseline_mm: stereo baseline, used when ``depth_source == "disparity"``
        thresholds: pass limits and unit handling
    """

    def __init__(self, locator, camera_matrix, baseline_mm: float,
                 thresholds: FusionThresholds = None):
        self.locator = locator
        self.thresholds = thresholds or FusionThresholds()
        if self.thresholds.threshold_units not in ("px", "mm"):
            raise ConfigurationError(f"unknown threshold_units {self.thresholds.threshold_units!r}")
        if self.thresholds.depth_source not in ("pose", "disparity"):
            raise ConfigurationError(f"unknown depth_source {self.thresholds.depth_source!r}")
        self.K = np.asarray(camera_matrix, dtype=np.float64)[:3, :3].copy()
        self.focal = float(self.K[0, 0])
        self.baseline_mm = float(baseline_mm)

    def depth_from_pose(self, corners: np.ndarray, object_points: np.ndarray) -> Optional[float]:
        try:
            ok, _rvec, tvec = cv2.solvePnP(object_points, corners.astype(np.float64), self.K,
                                           np.zeros(5), flags=cv2.SOLVEPNP_IPPE)
        except cv2.error as e:
            logger.debug("fiducial pose failed: %s", e)
            return None
        z = float(tvec.reshape(3)[2]) if ok else float("nan")
        return z if np.isfinite(z) and z > 0 else None

    def depth_from_disparity(self, left: np.ndarray, right: np.ndarray) -> Optional[float]:
        disparity = abs(float(np.mean(left[:, 0] - right[:, 0])))
        if disparity < 1e-6 or self.baseline_mm <= 0:
            return None
        return self.focal * self.baseline_mm / disparity

    def check(self, left_rect: np.ndarray, right_rect: np.ndarray) -> AlignmentResult:
        left = self.locator.locate_all(left_rect)
        right = self.locator.locate_all(right_rect)
        shared = sorted(set(left) & set(right))
        if not shared:
            logger.debug("no common fiducial (left=%s right=%s)", sorted(left), sorted(right))
            return AlignmentResult(Outcome.INSUFFICIENT_OBSERVATION)

        key = shared[0]
        lc, rc = left[key], right[key]
        obj = self.locator.object_points
        lc = np.asarray(lc, dtype=np.float64).reshape(-1, 2)
        rc = np.asarray(rc, dtype=np.float64).reshape(-1, 2)
        if lc.shape != rc.shape or len(lc) == 0:
            return AlignmentResult(Outcome.DEGENERATE)

        d = rc - lc
        err = np.hypot(d[:, 0], d[:, 1])
        mean_dx, mean_dy = float(d[:, 0].mean()), float(d[:, 1].mean())
        rms = float(np.sqrt(np.mean(err ** 2)))
        p95 = percentile(err, 0.95)
        max_err = float(err.max())

        if self.thresholds.depth_source == "pose":
            depth = self.depth_from_pose(lc, obj)
        else:
            depth = self.depth_from_disparity(lc, rc)

        rms_mm = p95_mm = max_mm = None
        if depth is not None:
            scale = depth / self.focal
            rms_mm, p95_mm, max_mm = rms * scale, p95 * scale, max_err * scale

        t = self.thresholds
        if t.threshold_units == "mm":
            if depth is None:
                outcome = Outcome.DEGENERATE
                measured = None
            else:
                measured = (rms_mm, p95_mm, max_mm)
        else:
            measured = (rms, p95, max_err)

        if measured is not None:
            ok = measured[0] <= t.rms_max and measured[1] <= t.p95_max and measured[2] <= t.max_max
            outcome = Outcome.PASSED if ok else Outcome.FAILED_TOLERANCE

        return AlignmentResult(
            outcome,
            mean_dx=mean_dx, mean_dy=mean_dy,
            rms=rms, p95=p95, max_err=max_err,
            rms_mm=rms_mm, p95_mm=p95_mm, max_mm=max_mm,
            depth_mm=depth, corner_count=len(lc),
        )
