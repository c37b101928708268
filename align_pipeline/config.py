from dataclasses import dataclass, asdict
from typing import Any, Optional

import numpy as np


@dataclass
class PatternSpec:
    """Physical layout of the circle grid shown by each eye.

    ``spacing_mm`` is the centre distance between nearest neighbours. For an
    asymmetric grid that is the diagonal distance; odd rows are shifted right
    by half a column pitch.
    """

    rows: int = 10
    cols: int = 4
    spacing_mm: float = 25.0
    asymmetric: bool = True

    @property
    def count(self) -> int:
        return self.rows * self.cols

    @property
    def unit_mm(self) -> float:
        if self.asymmetric:
            return self.spacing_mm / np.sqrt(2.0)
        return self.spacing_mm

    def object_points(self) -> np.ndarray:
        """Row-major 3D marker centres on the pattern plane, first marker at the origin."""
        u = self.unit_mm
        pts = []
        for r in range(self.rows):
            shift = (r % 2) if self.asymmetric else 0
            step = 2 if self.asymmetric else 1
            for c in range(self.cols):
                pts.append(((step * c + shift) * u, r * u, 0.0))
        pts = np.array(pts, dtype=np.float64)
        pts[:, :2] -= pts[0, :2]
        return pts

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FiducialSpec:
    kind: str = "apriltag"  # "apriltag" or "grid"
    dictionary: str = "apriltag_36h11"
    marker_id: Optional[int] = None
    tag_size_mm: float = 50.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DetectorParams:
    threshold_mode: str = "otsu"  # "otsu", "fixed", "adaptive"
    fixed_threshold: int = 128
    adaptive_block_size: int = 51
    adaptive_offset: float = 5.0  # foreground must beat the local mean by this much
    foreground: str = "bright"  # "bright" dots on dark, or "dark" on bright
    connectivity: int = 8
    min_area: float = 30.0
    max_area: float = 70000.0
    min_circularity: float = 0.6
    max_missing_fraction: float = 0.1
    max_extra_fraction: float = 0.25
    collinearity_tolerance: float = 0.3  # fraction of row pitch
    spacing_tolerance: float = 0.3  # fraction of column pitch

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PoseTolerance:
    roll_deg: float = 5.0
    pitch_deg: float = 10.0
    yaw_deg: float = 10.0
    max_reprojection_px: float = 5.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RectifyPolicy:
    interpolation: str = "auto"  # "auto", "linear", "nearest"
    nearest_above_pixels: int = 4_000_000
    border_value: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FusionThresholds:
    rms_max: float = 2.0
    p95_max: float = 3.0
    max_max: float = 4.0
    threshold_units: str = "px"  # "px" or "mm"
    depth_source: str = "pose"  # "pose" or "disparity"

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CenteringSpec:
    enabled: bool = False
    expected_first: tuple[float, float] = (0.0, 0.0)
    expected_last: tuple[float, float] = (0.0, 0.0)
    tolerance_px: float = 50.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)
