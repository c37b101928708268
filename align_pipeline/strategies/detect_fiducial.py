import logging
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from ..config import FiducialSpec
from ..errors import ConfigurationError
from .detect_circles import ConnectedComponentsDetector
from .preprocess import GrayscaleImage, to_uint8


logger = logging.getLogger(__name__)

# (corners (N, 2) float32 in image order, object points (N, 3) float64 in mm)
Located = Optional[Tuple[np.ndarray, np.ndarray]]


def get_dict(name: str):
    """
    Dictionary resolver for the fusion fiducial.
    AprilTag families first, a few ArUco sets for bench testing.
    Works on OpenCV >= 4.7 (getPredefinedDictionary) and older (Dictionary_get).
    """
    key = (name or "").strip().lower()
    table = {
        "apriltag_36h11": cv2.aruco.DICT_APRILTAG_36h11,
        "apriltag_25h9":  cv2.aruco.DICT_APRILTAG_25h9,
        "apriltag_16h5":  cv2.aruco.DICT_APRILTAG_16h5,
        "4x4_50":  cv2.aruco.DICT_4X4_50,
        "5x5_50":  cv2.aruco.DICT_5X5_50,
        "6x6_50":  cv2.aruco.DICT_6X6_50,
    }
    if key not in table:
        raise ConfigurationError(f"unknown fiducial dictionary {name!r}")
    code = table[key]

    if hasattr(cv2.aruco, "getPredefinedDictionary"):           # OpenCV >= 4.7
        return cv2.aruco.getPredefinedDictionary(code)
    return cv2.aruco.Dictionary_get(code)                        # Older OpenCV


def _make_params():
    """Create detector parameters across OpenCV versions, with sub-pixel corners."""
    if hasattr(cv2.aruco, "DetectorParameters_create"):
        params = cv2.aruco.DetectorParameters_create()
    else:
        params = cv2.aruco.DetectorParameters()
    if hasattr(cv2.aruco, "CORNER_REFINE_SUBPIX"):
        params.cornerRefinementMethod = cv2.aruco.CORNER_REFINE_SUBPIX
    return params


def tag_object_points(tag_size_mm: float) -> np.ndarray:
    """Tag corners centred on the tag, in detector corner order (TL, TR, BR, BL)."""
    h = tag_size_mm / 2.0
    return np.array([[-h, -h, 0.0], [h, -h, 0.0], [h, h, 0.0], [-h, h, 0.0]], dtype=np.float64)


class AprilTagLocator:
    """
    Strategy: locate the fusion tag in a rectified image.

    With ``marker_id`` set only that tag counts. Otherwise every visible tag
    is a candidate and the fusion check picks the lowest id both eyes see.
    """

    def __init__(self, spec: FiducialSpec = None):
        self.spec = spec or FiducialSpec()
        self.dictionary = get_dict(self.spec.dictionary)
        self.params = _make_params()
        self.object_points = tag_object_points(self.spec.tag_size_mm)
        self._gray = GrayscaleImage()
        self._detector = None
        # Prefer the newer ArucoDetector API if present
        if hasattr(cv2.aruco, "ArucoDetector"):
            self._detector = cv2.aruco.ArucoDetector(self.dictionary, self.params)

    def locate_all(self, image: np.ndarray) -> Dict[int, np.ndarray]:
        """Corners (4, 2) float32 per visible tag id; the largest copy wins for repeated ids."""
        gray = to_uint8(self._gray.apply(image))
        if self._detector is not None:
            corners, ids, _rej = self._detector.detectMarkers(gray)
        else:
            corners, ids, _rej = cv2.aruco.detectMarkers(gray, self.dictionary, parameters=self.params)

        found: Dict[int, np.ndarray] = {}
        if ids is None or len(ids) == 0:
            return found
        for c, mid in zip(corners, ids.flatten()):
            mid = int(mid)
            if self.spec.marker_id is not None and mid != self.spec.marker_id:
                continue
            c = c.reshape(4, 2).astype(np.float32)
            if mid not in found or abs(cv2.contourArea(c)) > abs(cv2.contourArea(found[mid])):
                found[mid] = c
        return found

    def locate(self, image: np.ndarray) -> Located:
        found = self.locate_all(image)
        if not found:
            return None
        return found[min(found)], self.object_points


class GridLocator:
    """Strategy: use the circle grid itself as the fusion fiducial."""

    def __init__(self, detector: ConnectedComponentsDetector):
        self.detector = detector
        self.object_points = detector.pattern.object_points()

    def locate_all(self, image: np.ndarray) -> Dict[int, np.ndarray]:
        obs = self.detector.detect(image)
        if not obs.sufficient:
            return {}
        return {0: obs.points}

    def locate(self, image: np.ndarray) -> Located:
        found = self.locate_all(image)
        if not found:
            return None
        return found[0], self.object_points
