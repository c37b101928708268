from .config import DetectorParams, FusionThresholds, PoseTolerance, RectifyPolicy
from .errors import ConfigurationError
from .services.calib import CalibrationGeometry
from .strategies.detect_circles import ConnectedComponentsDetector
from .strategies.detect_fiducial import AprilTagLocator, GridLocator
from .strategies.fusion_check import FusionChecker
from .strategies.localize_pnp import PoseEstimator
from .strategies.rectify_remap import Rectifier


class StrategyFactory:
    @staticmethod
    def from_config(geometry: CalibrationGeometry, config=None):
        """Build (detector, left_pose, right_pose, rectifier, fusion) for one rig.

        ``config`` is any object with optional ``detector``, ``pose``,
        ``rectify`` and ``fusion`` sections; missing sections use defaults.
        """
        detector_params = getattr(config, "detector", None) or DetectorParams()
        tolerance = getattr(config, "pose", None) or PoseTolerance()
        policy = getattr(config, "rectify", None) or RectifyPolicy()
        thresholds = getattr(config, "fusion", None) or FusionThresholds()

        # Detection on raw frames, one pose estimator per eye
        det = ConnectedComponentsDetector(geometry.pattern, detector_params)
        left_pose = PoseEstimator(geometry.left_camera_matrix, geometry.left_dist_coeffs,
                                  geometry.pattern, tolerance)
        right_pose = PoseEstimator(geometry.right_camera_matrix, geometry.right_dist_coeffs,
                                   geometry.pattern, tolerance)

        rect = Rectifier(policy)

        # Fusion runs on rectified frames, so it uses the rectified projection
        kind = geometry.fiducial.kind
        if kind == "apriltag":
            locator = AprilTagLocator(geometry.fiducial)
        elif kind == "grid":
            locator = GridLocator(det)
        else:
            raise ConfigurationError(f"unknown fiducial kind {kind!r}")
        fusion = FusionChecker(locator, geometry.P1, geometry.baseline_mm, thresholds)

        return det, left_pose, right_pose, rect, fusion
