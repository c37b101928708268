"""Synthetic images and calibration files for bench runs and tests.

Nothing here touches hardware: the circle grid is projected through an ideal
pinhole camera, tags come from the ArUco generator, and calibration files
describe an already-rectified rig (identity maps).
"""

import os
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from .config import PatternSpec
from .services.calib import write_nodes
from .strategies.detect_fiducial import get_dict
from .transforms import euler_to_matrix


def default_camera_matrix(image_size: Tuple[int, int], focal: Optional[float] = None) -> np.ndarray:
    w, h = image_size
    f = focal if focal is not None else 1.25 * w
    return np.array([[f, 0.0, w / 2.0], [0.0, f, h / 2.0], [0.0, 0.0, 1.0]])


def render_circle_grid(
    image_size: Tuple[int, int],
    camera_matrix: np.ndarray,
    pattern: PatternSpec,
    roll: float = 0.0,
    pitch: float = 0.0,
    yaw: float = 0.0,
    distance_mm: float = 400.0,
    radius_mm: Optional[float] = None,
    shift_px: Tuple[float, float] = (0.0, 0.0),
    foreground: int = 255,
    background: int = 0,
) -> np.ndarray:
    """
    Render a circle grid seen by a pinhole camera without distortion.

    The grid centre sits on the optical axis ``distance_mm`` away and the
    grid is rotated by R = Rz(roll) @ Ry(yaw) @ Rx(pitch) about that centre.

    Args:
        image_size: (width, height)
        camera_matrix: 3x3 intrinsics
        pattern: grid layout
        roll, pitch, yaw: pattern orientation (degrees)
        distance_mm: depth of the grid centre
        radius_mm: marker radius, default a quarter of the spacing
        shift_px: image-space offset added after projection
        foreground, background: gray levels

    Returns:
        uint8 gray image (height, width)
    """
    w, h = image_size
    img = np.full((h, w), background, dtype=np.uint8)
    K = np.asarray(camera_matrix, dtype=np.float64)
    obj = pattern.object_points()
    centre = np.array([*obj[:, :2].mean(axis=0), 0.0])

    R = euler_to_matrix(roll, pitch, yaw)
    rvec, _ = cv2.Rodrigues(R)
    tvec = np.array([0.0, 0.0, distance_mm]) - R @ centre

    r = radius_mm if radius_mm is not None else pattern.spacing_mm / 4.0
    t = np.linspace(0.0, 2 * np.pi, 64, endpoint=False)
    ring = np.stack([r * np.cos(t), r * np.sin(t), np.zeros_like(t)], axis=1)

    for p in obj:
        outline, _ = cv2.projectPoints(p + ring, rvec, tvec, K, np.zeros(5))
        outline = outline.reshape(-1, 2) + np.asarray(shift_px, dtype=np.float64)
        # 4 fractional bits keep sub-pixel edges
        cv2.fillPoly(img, [np.round(outline * 16).astype(np.int32)], int(foreground),
                     lineType=cv2.LINE_8, shift=4)
    return img


def render_tag(
    image_size: Tuple[int, int],
    tag_id: int = 0,
    dictionary: str = "apriltag_36h11",
    side_px: int = 200,
    top_left: Tuple[int, int] = (0, 0),
    background: int = 255,
) -> np.ndarray:
    """Paste one generated tag onto a plain canvas at an integer position."""
    w, h = image_size
    d = get_dict(dictionary)
    if hasattr(cv2.aruco, "generateImageMarker"):            # OpenCV >= 4.7
        marker = cv2.aruco.generateImageMarker(d, tag_id, side_px)
    else:
        marker = cv2.aruco.drawMarker(d, tag_id, side_px)
    img = np.full((h, w), background, dtype=np.uint8)
    x, y = top_left
    img[y:y + side_px, x:x + side_px] = marker
    return img


def write_rectified_rig(
    directory: str,
    image_size: Tuple[int, int],
    camera_matrix: Optional[np.ndarray] = None,
    baseline_mm: float = 60.0,
    ext: str = ".yml",
    fixed_point_maps: bool = False,
) -> Dict[str, str]:
    """
    Write the five calibration artifacts of an ideal, already-rectified rig.

    Both eyes share ``camera_matrix`` and have no distortion; the right eye is
    ``baseline_mm`` along x; the rectification maps are the identity.

    Returns:
        dict of paths keyed left_intrinsics, right_intrinsics,
        stereo_extrinsics, rectify_params, rectify_maps
    """
    w, h = image_size
    K = np.asarray(camera_matrix if camera_matrix is not None else default_camera_matrix(image_size),
                   dtype=np.float64)
    f, cx, cy = K[0, 0], K[0, 2], K[1, 2]
    dist = np.zeros((1, 5))
    os.makedirs(directory, exist_ok=True)
    paths = {
        "left_intrinsics": os.path.join(directory, "left_intrinsics" + ext),
        "right_intrinsics": os.path.join(directory, "right_intrinsics" + ext),
        "stereo_extrinsics": os.path.join(directory, "stereo_extrinsics" + ext),
        "rectify_params": os.path.join(directory, "rectify_params" + ext),
        "rectify_maps": os.path.join(directory, "rectify_maps" + ext),
    }

    write_nodes(paths["left_intrinsics"], {"camera_matrix": K, "dist_coeffs": dist})
    write_nodes(paths["right_intrinsics"], {"camera_matrix": K, "dist_coeffs": dist})
    write_nodes(paths["stereo_extrinsics"], {
        "R": np.eye(3),
        "T": np.array([[-baseline_mm], [0.0], [0.0]]),
    })

    P1 = np.hstack([K, np.zeros((3, 1))])
    P2 = P1.copy()
    P2[0, 3] = -f * baseline_mm
    Q = np.array([
        [1.0, 0.0, 0.0, -cx],
        [0.0, 1.0, 0.0, -cy],
        [0.0, 0.0, 0.0, f],
        [0.0, 0.0, 1.0 / baseline_mm, 0.0],
    ])
    write_nodes(paths["rectify_params"], {"R1": np.eye(3), "R2": np.eye(3), "P1": P1, "P2": P2, "Q": Q})

    mx, my = np.meshgrid(np.arange(w, dtype=np.float32), np.arange(h, dtype=np.float32))
    if fixed_point_maps:
        m1, m2 = cv2.convertMaps(mx, my, cv2.CV_16SC2)
    else:
        m1, m2 = mx, my
    write_nodes(paths["rectify_maps"], {
        "left_map1": m1, "left_map2": m2, "right_map1": m1, "right_map2": m2,
    })
    return paths
