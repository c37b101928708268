import logging

import cv2
import numpy as np

from ..ap_types import Blob, PatternObservation
from ..config import DetectorParams, PatternSpec
from ..errors import ConfigurationError
from .grid_topology import order_grid
from .preprocess import GrayscaleImage, PreprocessStrategy, to_uint8


logger = logging.getLogger(__name__)

_THRESHOLD_MODES = ("otsu", "fixed", "adaptive")


class ConnectedComponentsDetector:
    """
    Strategy: find the circle-grid markers in one eye's image.

    Binarises the image, labels connected components, keeps blobs whose area
    and circularity look like a marker, then hands their centroids to
    :func:`order_grid`. Never raises on bad input images: any image where
    the pattern cannot be recovered unambiguously gives an insufficient
    observation.
    """

    def __init__(self, pattern: PatternSpec, params: DetectorParams = None,
                 preprocess: PreprocessStrategy = None):
        self.pattern = pattern
        self.params = params or DetectorParams()
        self.preprocess = preprocess or GrayscaleImage()
        if self.params.threshold_mode not in _THRESHOLD_MODES:
            raise ConfigurationError(f"unknown threshold_mode {self.params.threshold_mode!r}")
        if self.params.foreground not in ("bright", "dark"):
            raise ConfigurationError(f"unknown foreground {self.params.foreground!r}")
        if self.params.connectivity not in (4, 8):
            raise ConfigurationError("connectivity must be 4 or 8")

    def binarize(self, gray: np.ndarray) -> np.ndarray:
        p = self.params
        img = to_uint8(gray)
        kind = cv2.THRESH_BINARY if p.foreground == "bright" else cv2.THRESH_BINARY_INV

        if p.threshold_mode == "fixed":
            _, bw = cv2.threshold(img, p.fixed_threshold, 255, kind)
        elif p.threshold_mode == "otsu":
            _, bw = cv2.threshold(img, 0, 255, kind | cv2.THRESH_OTSU)
        else:
            block = max(3, int(p.adaptive_block_size) | 1)
            offset = -p.adaptive_offset if p.foreground == "bright" else p.adaptive_offset
            bw = cv2.adaptiveThreshold(img, 255, cv2.ADAPTIVE_THRESH_MEAN_C, kind, block, offset)
        return bw

    def find_blobs(self, gray: np.ndarray) -> list[Blob]:
        p = self.params
        bw = self.binarize(gray)
        h_img, w_img = bw.shape[:2]
        n, labels, stats, centroids = cv2.connectedComponentsWithStats(
            bw, connectivity=p.connectivity, ltype=cv2.CV_32S)

        blobs: list[Blob] = []
        for label in range(1, n):
            area = float(stats[label, cv2.CC_STAT_AREA])
            if area < p.min_area or area > p.max_area:
                continue
            x = int(stats[label, cv2.CC_STAT_LEFT]); y = int(stats[label, cv2.CC_STAT_TOP])
            w = int(stats[label, cv2.CC_STAT_WIDTH]); h = int(stats[label, cv2.CC_STAT_HEIGHT])
            # clipped blobs have a biased centroid
            if x == 0 or y == 0 or x + w >= w_img or y + h >= h_img:
                continue

            mask = (labels[y:y + h, x:x + w] == label).astype(np.uint8)
            contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)
            if not contours:
                continue
            perimeter = cv2.arcLength(max(contours, key=cv2.contourArea), True)
            if perimeter <= 0:
                continue
            circularity = min(1.0, 4.0 * np.pi * area / (perimeter * perimeter))
            if circularity < p.min_circularity:
                continue

            cx, cy = centroids[label]
            blobs.append(Blob(label, (float(cx), float(cy)), area, (x, y, w, h), float(circularity)))
        return blobs

    def detect(self, image: np.ndarray) -> PatternObservation:
        if image is None or image.size == 0:
            return PatternObservation.insufficient("empty image")
        gray = self.preprocess.apply(image)
        blobs = self.find_blobs(gray)
        if not blobs:
            return PatternObservation.insufficient("no blobs")

        centers = np.array([b.centroid for b in blobs], dtype=np.float64)
        areas = np.array([b.area for b in blobs], dtype=np.float64)
        obs = order_grid(centers, areas, self.pattern, self.params)
        if obs.sufficient:
            logger.debug("pattern found: %d blobs, %d recovered", obs.blobs_found, obs.recovered)
        else:
            logger.debug("pattern not found: %s", obs.reason)
        return obs
