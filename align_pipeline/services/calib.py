import os
from dataclasses import dataclass, field, fields
from typing import Dict, Iterable, Tuple

import cv2
import numpy as np

from ..config import FiducialSpec, PatternSpec
from ..errors import ConfigurationError


INTRINSIC_NODES = ("camera_matrix", "dist_coeffs")
EXTRINSIC_NODES = ("R", "T")
RECTIFY_NODES = ("R1", "R2", "P1", "P2", "Q")
MAP_NODES = ("left_map1", "left_map2", "right_map1", "right_map2")

_DIST_SIZES = (4, 5, 8, 12, 14)


@dataclass(frozen=True)
class CalibrationGeometry:
    """Everything the stages need from calibration. Arrays are read-only."""

    image_size: Tuple[int, int]  # (width, height)
    left_camera_matrix: np.ndarray
    left_dist_coeffs: np.ndarray
    right_camera_matrix: np.ndarray
    right_dist_coeffs: np.ndarray
    R: np.ndarray
    T: np.ndarray
    R1: np.ndarray
    R2: np.ndarray
    P1: np.ndarray
    P2: np.ndarray
    Q: np.ndarray
    left_map1: np.ndarray
    left_map2: np.ndarray
    right_map1: np.ndarray
    right_map2: np.ndarray
    pattern: PatternSpec = field(default_factory=PatternSpec)
    fiducial: FiducialSpec = field(default_factory=FiducialSpec)

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, np.ndarray):
                value.flags.writeable = False

    @property
    def baseline_mm(self) -> float:
        return float(np.linalg.norm(self.T))


def read_nodes(path: str, names: Iterable[str]) -> Dict[str, np.ndarray]:
    """Read matrix nodes from an OpenCV FileStorage document (YAML/XML/JSON)."""
    if not path or not os.path.isfile(path):
        raise ConfigurationError(f"calibration file not found: {path}")
    try:
        fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    except cv2.error as e:
        raise ConfigurationError(f"cannot parse calibration file {path}: {e}") from e
    try:
        if not fs.isOpened():
            raise ConfigurationError(f"cannot open calibration file {path}")
        out = {}
        for name in names:
            node = fs.getNode(name)
            m = None if node.empty() else node.mat()
            if m is None or m.size == 0:
                raise ConfigurationError(f"{path}: missing or empty node {name!r}")
            out[name] = np.array(m)
        return out
    finally:
        fs.release()


def write_nodes(path: str, nodes: Dict[str, np.ndarray]) -> None:
    """Write matrix nodes as an OpenCV FileStorage document; the extension picks the format."""
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
    try:
        for name, value in nodes.items():
            fs.write(name, np.asarray(value))
    finally:
        fs.release()


def _expect_shape(path: str, name: str, m: np.ndarray, shape: tuple) -> np.ndarray:
    if m.shape != shape:
        raise ConfigurationError(f"{path}: node {name!r} has shape {m.shape}, expected {shape}")
    return m.astype(np.float64)


def load_intrinsics(path: str) -> Tuple[np.ndarray, np.ndarray]:
    nodes = read_nodes(path, INTRINSIC_NODES)
    K = _expect_shape(path, "camera_matrix", nodes["camera_matrix"], (3, 3))
    dist = nodes["dist_coeffs"].astype(np.float64).reshape(1, -1)
    if dist.shape[1] not in _DIST_SIZES:
        raise ConfigurationError(f"{path}: dist_coeffs has {dist.shape[1]} values")
    return K, dist


def load_extrinsics(path: str) -> Tuple[np.ndarray, np.ndarray]:
    nodes = read_nodes(path, EXTRINSIC_NODES)
    R = _expect_shape(path, "R", nodes["R"], (3, 3))
    T = nodes["T"].astype(np.float64)
    if T.size != 3:
        raise ConfigurationError(f"{path}: node 'T' must hold 3 values")
    return R, T.reshape(3, 1)


def load_rectify_params(path: str) -> Dict[str, np.ndarray]:
    nodes = read_nodes(path, RECTIFY_NODES)
    shapes = {"R1": (3, 3), "R2": (3, 3), "P1": (3, 4), "P2": (3, 4), "Q": (4, 4)}
    return {k: _expect_shape(path, k, nodes[k], shapes[k]) for k in RECTIFY_NODES}


def _check_map_pair(path: str, side: str, map1: np.ndarray, map2: np.ndarray, size) -> None:
    w, h = size
    if map1.shape[:2] != (h, w) or map2.shape[:2] != (h, w):
        raise ConfigurationError(
            f"{path}: {side} maps are {map1.shape[:2]}/{map2.shape[:2]}, expected {(h, w)}")
    float_pair = map1.dtype == np.float32 and map1.ndim == 2 and map2.dtype == np.float32
    fixed_pair = map1.dtype == np.int16 and map1.ndim == 3 and map1.shape[2] == 2 \
        and map2.dtype == np.uint16
    if not (float_pair or fixed_pair):
        raise ConfigurationError(
            f"{path}: {side} maps must be float32 pairs or CV_16SC2/CV_16UC1, "
            f"got {map1.dtype}/{map2.dtype}")


def load_rectify_maps(path: str, image_size: Tuple[int, int]) -> Dict[str, np.ndarray]:
    nodes = read_nodes(path, MAP_NODES)
    _check_map_pair(path, "left", nodes["left_map1"], nodes["left_map2"], image_size)
    _check_map_pair(path, "right", nodes["right_map1"], nodes["right_map2"], image_size)
    return nodes


def load_calibration(
    image_size: Tuple[int, int],
    left_intrinsics: str,
    right_intrinsics: str,
    stereo_extrinsics: str,
    rectify_params: str,
    rectify_maps: str,
    pattern: PatternSpec = None,
    fiducial: FiducialSpec = None,
) -> CalibrationGeometry:
    """Load and validate every calibration artifact; raises ConfigurationError on any defect."""
    try:
        w, h = (int(v) for v in image_size)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"bad image_size {image_size!r}") from e
    if w <= 0 or h <= 0:
        raise ConfigurationError(f"bad image_size {image_size!r}")

    lK, ld = load_intrinsics(left_intrinsics)
    rK, rd = load_intrinsics(right_intrinsics)
    R, T = load_extrinsics(stereo_extrinsics)
    rect = load_rectify_params(rectify_params)
    maps = load_rectify_maps(rectify_maps, (w, h))

    return CalibrationGeometry(
        image_size=(w, h),
        left_camera_matrix=lK, left_dist_coeffs=ld,
        right_camera_matrix=rK, right_dist_coeffs=rd,
        R=R, T=T,
        R1=rect["R1"], R2=rect["R2"], P1=rect["P1"], P2=rect["P2"], Q=rect["Q"],
        left_map1=maps["left_map1"], left_map2=maps["left_map2"],
        right_map1=maps["right_map1"], right_map2=maps["right_map2"],
        pattern=pattern or PatternSpec(),
        fiducial=fiducial or FiducialSpec(),
    )
