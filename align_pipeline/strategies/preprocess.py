from abc import ABC, abstractmethod
import cv2
import numpy as np


def to_uint8(gray: np.ndarray) -> np.ndarray:
    """
    8-bit view for thresholding and tag detection.
    16-bit images keep their high byte so fixed levels mean the same thing
    on every frame; any other type is stretched to the full 0..255 range.
    """
    if gray.dtype == np.uint8:
        return gray
    if gray.dtype == np.uint16:
        return (gray >> 8).astype(np.uint8)
    return cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)


class PreprocessStrategy(ABC):
    @abstractmethod
    def apply(self, image: np.ndarray) -> np.ndarray: ...


class PassThrough(PreprocessStrategy):
    def apply(self, image: np.ndarray) -> np.ndarray:
        return image


class GrayscaleImage(PreprocessStrategy):
    def apply(self, image: np.ndarray) -> np.ndarray:
        if image.ndim == 2:
            return image
        if image.shape[2] == 1:
            return image[:, :, 0]
        if image.shape[2] == 4:
            return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
