import logging
import time

import cv2
import numpy as np

from ..config import RectifyPolicy
from ..errors import ConfigurationError


logger = logging.getLogger(__name__)

_MODES = {"linear": cv2.INTER_LINEAR, "nearest": cv2.INTER_NEAREST}


class Rectifier:
    """Warp one image with precomputed rectification maps. Makes no decisions."""

    def __init__(self, policy: RectifyPolicy = None):
        self.policy = policy or RectifyPolicy()
        if self.policy.interpolation not in ("auto", *_MODES):
            raise ConfigurationError(f"unknown interpolation {self.policy.interpolation!r}")

    def choose_interpolation(self, shape) -> int:
        if self.policy.interpolation != "auto":
            return _MODES[self.policy.interpolation]
        h, w = shape[:2]
        if h * w > self.policy.nearest_above_pixels:
            return cv2.INTER_NEAREST
        return cv2.INTER_LINEAR

    def apply(self, image: np.ndarray, map1: np.ndarray, map2: np.ndarray) -> np.ndarray:
        t0 = time.perf_counter()
        interp = self.choose_interpolation(image.shape)
        out = cv2.remap(image, map1, map2, interp,
                        borderMode=cv2.BORDER_CONSTANT, borderValue=self.policy.border_value)
        logger.debug("remap %dx%d interp=%d in %.2f ms", image.shape[1], image.shape[0],
                     interp, (time.perf_counter() - t0) * 1000.0)
        return out
