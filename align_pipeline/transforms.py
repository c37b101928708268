"""Rotation helpers for pattern pose handling."""

import numpy as np
import cv2
from typing import Tuple


def rvec_to_matrix(rvec: np.ndarray) -> np.ndarray:
    """
    Convert a rotation vector to a 3x3 rotation matrix.

    Args:
        rvec: Rotation vector (3,) or (3,1)

    Returns:
        3x3 rotation matrix
    """
    rvec = np.asarray(rvec, dtype=np.float64).reshape(3)
    R, _ = cv2.Rodrigues(rvec)
    return R


def euler_to_matrix(roll_deg: float, pitch_deg: float, yaw_deg: float) -> np.ndarray:
    """
    Build a rotation matrix from camera-relative Euler angles.

    Composition is R = Rz(roll) @ Ry(yaw) @ Rx(pitch): roll turns the pattern
    about the optical axis, yaw about the image vertical, pitch about the
    image horizontal.

    Args:
        roll_deg: Rotation about camera z (degrees)
        pitch_deg: Rotation about camera x (degrees)
        yaw_deg: Rotation about camera y (degrees)

    Returns:
        3x3 rotation matrix
    """
    r, p, y = np.radians([roll_deg, pitch_deg, yaw_deg])

    Rz = np.array([[np.cos(r), -np.sin(r), 0.0],
                   [np.sin(r), np.cos(r), 0.0],
                   [0.0, 0.0, 1.0]])
    Ry = np.array([[np.cos(y), 0.0, np.sin(y)],
                   [0.0, 1.0, 0.0],
                   [-np.sin(y), 0.0, np.cos(y)]])
    Rx = np.array([[1.0, 0.0, 0.0],
                   [0.0, np.cos(p), -np.sin(p)],
                   [0.0, np.sin(p), np.cos(p)]])
    return Rz @ Ry @ Rx


def matrix_to_euler(R: np.ndarray) -> Tuple[float, float, float]:
    """
    Decompose a rotation matrix into (roll, pitch, yaw) degrees.

    Inverse of :func:`euler_to_matrix`. Near the yaw = ±90° singularity roll
    is pinned to zero.

    Args:
        R: 3x3 rotation matrix

    Returns:
        (roll, pitch, yaw) in degrees
    """
    R = np.asarray(R, dtype=np.float64)
    sy = np.hypot(R[0, 0], R[1, 0])

    if sy > 1e-6:
        roll = np.arctan2(R[1, 0], R[0, 0])
        pitch = np.arctan2(R[2, 1], R[2, 2])
        yaw = np.arctan2(-R[2, 0], sy)
    else:
        roll = 0.0
        pitch = np.arctan2(-R[1, 2], R[1, 1])
        yaw = np.arctan2(-R[2, 0], sy)

    return float(np.degrees(roll)), float(np.degrees(pitch)), float(np.degrees(yaw))


def rvec_to_euler(rvec: np.ndarray) -> Tuple[float, float, float]:
    """Shortcut for ``matrix_to_euler(rvec_to_matrix(rvec))``."""
    return matrix_to_euler(rvec_to_matrix(rvec))
