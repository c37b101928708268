import logging

import cv2
import numpy as np

from ..ap_types import Outcome, PatternObservation, PoseResult
from ..config import PatternSpec, PoseTolerance
from ..transforms import rvec_to_euler


logger = logging.getLogger(__name__)


def is_collinear(points: np.ndarray, ratio: float = 1e-3) -> bool:
    """True when the 2D points do not span a plane (second singular value ~ 0)."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(pts) < 3:
        return True
    s = np.linalg.svd(pts - pts.mean(axis=0), compute_uv=False)
    return s[0] <= 0 or s[1] / s[0] < ratio


class PoseEstimator:
    """
    Strategy: recover one eye's pattern orientation and gate it.

    Solves the planar PnP problem for the ordered marker centres, decomposes
    the rotation into camera-relative roll/pitch/yaw and compares each angle
    with its tolerance.
    """

    def __init__(self, camera_matrix, dist_coeffs, pattern: PatternSpec,
                 tolerance: PoseTolerance = None):
        self.K = np.asarray(camera_matrix, dtype=np.float64)
        self.dist = np.asarray(dist_coeffs, dtype=np.float64).reshape(-1)
        self.pattern = pattern
        self.tolerance = tolerance or PoseTolerance()
        self.object_points = pattern.object_points()

    def within_tolerance(self, roll: float, pitch: float, yaw: float) -> bool:
        t = self.tolerance
        return abs(roll) <= t.roll_deg and abs(pitch) <= t.pitch_deg and abs(yaw) <= t.yaw_deg

    def estimate(self, observation: PatternObservation) -> PoseResult:
        if not observation.sufficient:
            return PoseResult.failed(Outcome.INSUFFICIENT_OBSERVATION)

        img = np.asarray(observation.points, dtype=np.float64).reshape(-1, 2)
        if len(img) != len(self.object_points) or is_collinear(img):
            return PoseResult.failed(Outcome.DEGENERATE)

        try:
            ok, rvec, tvec = cv2.solvePnP(self.object_points, img, self.K, self.dist,
                                          flags=cv2.SOLVEPNP_IPPE)
        except cv2.error as e:
            logger.debug("solvePnP failed: %s", e)
            return PoseResult.failed(Outcome.DEGENERATE)

        if not ok or not (np.all(np.isfinite(rvec)) and np.all(np.isfinite(tvec))):
            return PoseResult.failed(Outcome.DEGENERATE)
        if float(tvec.reshape(3)[2]) <= 0:
            return PoseResult.failed(Outcome.DEGENERATE)

        proj, _ = cv2.projectPoints(self.object_points, rvec, tvec, self.K, self.dist)
        err = float(np.sqrt(np.mean(np.sum((proj.reshape(-1, 2) - img) ** 2, axis=1))))

        roll, pitch, yaw = rvec_to_euler(rvec)
        if err > self.tolerance.max_reprojection_px:
            outcome = Outcome.DEGENERATE
        elif self.within_tolerance(roll, pitch, yaw):
            outcome = Outcome.PASSED
        else:
            outcome = Outcome.FAILED_TOLERANCE

        return PoseResult(roll, pitch, yaw, outcome, err,
                          rvec.reshape(3).copy(), tvec.reshape(3).copy())
