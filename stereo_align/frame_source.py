"""Stereo frame sources for the alignment service.

Provides a unified interface for:
- image pairs stored on disk (``l_<name>`` / ``r_<name>``)
- synthetic circle-grid pairs for bench dry runs
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import cv2
import numpy as np

from align_pipeline.config import PatternSpec
from align_pipeline.synthetic import render_circle_grid

_IMAGE_SUFFIXES = {".png", ".bmp", ".jpg", ".jpeg", ".tif", ".tiff"}


class StereoFrameSource(ABC):
    """Abstract base class for stereo frame sources."""

    @abstractmethod
    def start(self) -> None:
        """Prepare the source. Called before any read() calls."""
        ...

    @abstractmethod
    def read(self) -> tuple[Optional[np.ndarray], Optional[np.ndarray], int] | None:
        """Read the next pair.

        Returns:
            (left, right, index) or None when the source is exhausted.
            An image that cannot be decoded is returned as None so the
            pipeline can reject it.
        """
        ...

    @abstractmethod
    def stop(self) -> None:
        """Release resources."""
        ...


class ImagePairSource(StereoFrameSource):
    """Reads ``l_*.png`` / ``r_*.png`` pairs from a directory, sorted by name."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.pairs: list[tuple[Path, Path]] = []
        self._pos = 0

    def start(self) -> None:
        if not self.directory.is_dir():
            raise FileNotFoundError(f"Input directory not found: {self.directory}")
        lefts = sorted(p for p in self.directory.glob("l_*") if p.suffix.lower() in _IMAGE_SUFFIXES)
        self.pairs = []
        for left in lefts:
            right = left.with_name("r_" + left.name[2:])
            if right.exists():
                self.pairs.append((left, right))
        self._pos = 0

    def read(self):
        if self._pos >= len(self.pairs):
            return None
        left_path, right_path = self.pairs[self._pos]
        self._pos += 1
        left = cv2.imread(str(left_path), cv2.IMREAD_UNCHANGED)
        right = cv2.imread(str(right_path), cv2.IMREAD_UNCHANGED)
        return left, right, self._pos

    def stop(self) -> None:
        self.pairs = []


class SyntheticPairSource(StereoFrameSource):
    """Renders circle-grid pairs with small random pose jitter.

    The right eye is the left eye's view shifted by ``shift_px``, so the
    fusion error of every pair is exactly that shift.
    """

    def __init__(self, image_size: tuple[int, int], camera_matrix: np.ndarray,
                 pattern: PatternSpec, count: int = 10, jitter_deg: float = 2.0,
                 shift_px: tuple[float, float] = (0.5, 0.0), distance_mm: float = 400.0,
                 seed: int = 0):
        self.image_size = image_size
        self.camera_matrix = camera_matrix
        self.pattern = pattern
        self.count = count
        self.jitter_deg = jitter_deg
        self.shift_px = shift_px
        self.distance_mm = distance_mm
        self.seed = seed
        self._rng: Optional[np.random.Generator] = None
        self._index = 0

    def start(self) -> None:
        self._rng = np.random.default_rng(self.seed)
        self._index = 0

    def read(self):
        if self._rng is None or self._index >= self.count:
            return None
        self._index += 1
        roll, pitch, yaw = self._rng.uniform(-self.jitter_deg, self.jitter_deg, size=3)
        kwargs = dict(roll=roll, pitch=pitch, yaw=yaw, distance_mm=self.distance_mm)
        left = render_circle_grid(self.image_size, self.camera_matrix, self.pattern, **kwargs)
        right = render_circle_grid(self.image_size, self.camera_matrix, self.pattern,
                                   shift_px=self.shift_px, **kwargs)
        return left, right, self._index

    def stop(self) -> None:
        self._rng = None
