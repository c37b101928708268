"""Arrange blob centroids into the row-major topology of a circle grid.

The matcher works on a de-rotated copy of the centroids: the in-plane
orientation comes from the minimum-area rectangle around the blobs, rows are
split on vertical gaps and columns are assigned from the lattice phase. Odd
rows of an asymmetric grid sit half a column pitch to the right of even rows.
Up to ``max_missing_fraction`` markers can be filled in from a homography
fitted to the markers that were found; up to ``max_extra_fraction`` stray
blobs are discarded. Anything else is reported as an insufficient
observation, never as a partial ordering.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np

from ..ap_types import PatternObservation
from ..config import DetectorParams, PatternSpec


logger = logging.getLogger(__name__)

_ISOLATION_FACTOR = 2.5


def _nn_distances(pts: np.ndarray) -> np.ndarray:
    d = np.linalg.norm(pts[:, None, :] - pts[None, :, :], axis=2)
    np.fill_diagonal(d, np.inf)
    return d.min(axis=1)


def _prune_isolated(pts: np.ndarray, areas: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    nn = _nn_distances(pts)
    keep = nn <= _ISOLATION_FACTOR * np.median(nn)
    return pts[keep], areas[keep]


def _prune_by_score(pts: np.ndarray, areas: np.ndarray, n_drop: int) -> tuple[np.ndarray, np.ndarray]:
    nn = _nn_distances(pts)
    med_area = max(float(np.median(areas)), 1e-9)
    med_nn = max(float(np.median(nn)), 1e-9)
    score = np.abs(areas - med_area) / med_area + np.abs(nn - med_nn) / med_nn
    drop = np.argsort(-score, kind="stable")[:n_drop]
    keep = np.ones(len(pts), dtype=bool)
    keep[drop] = False
    return pts[keep], areas[keep]


def _grid_angle(pts: np.ndarray) -> float:
    """In-plane rotation of the grid rows, folded into [-45°, 45°)."""
    rect = cv2.minAreaRect(pts.astype(np.float32))
    box = cv2.boxPoints(rect)
    edge = box[1] - box[0]
    theta = float(np.arctan2(edge[1], edge[0]))
    return (theta + np.pi / 4) % (np.pi / 2) - np.pi / 4


def order_grid(
    centers: np.ndarray,
    areas: np.ndarray,
    pattern: PatternSpec,
    params: DetectorParams,
) -> PatternObservation:
    """Return the row-major observation for ``centers`` or an insufficiency signal."""
    pts = np.asarray(centers, dtype=np.float64).reshape(-1, 2)
    areas = np.asarray(areas, dtype=np.float64).reshape(-1)
    found = len(pts)
    expected = pattern.count
    max_extra = int(np.floor(params.max_extra_fraction * expected))
    max_missing = int(np.floor(params.max_missing_fraction * expected))

    if found < max(4, expected - max_missing):
        return PatternObservation.insufficient(
            f"found {found} blobs, expected {expected}", found)
    if found > expected + max_extra:
        return PatternObservation.insufficient(
            f"found {found} blobs, at most {expected + max_extra} tolerated", found)

    # Canonical scan order so the result never depends on labelling order.
    order = np.lexsort((pts[:, 0], pts[:, 1]))
    pts, areas = pts[order], areas[order]

    pts, areas = _prune_isolated(pts, areas)
    if len(pts) > expected:
        pts, areas = _prune_by_score(pts, areas, len(pts) - expected)
    dropped = found - len(pts)

    if len(pts) < max(4, expected - max_missing):
        return PatternObservation.insufficient(
            f"{len(pts)} blobs left after rejecting outliers", found)

    theta = _grid_angle(pts)
    c, s = np.cos(theta), np.sin(theta)
    rel = pts - pts.mean(axis=0)
    xr = rel[:, 0] * c + rel[:, 1] * s
    yr = -rel[:, 0] * s + rel[:, 1] * c

    nn = float(np.median(_nn_distances(pts)))
    if nn <= 0:
        return PatternObservation.insufficient("coincident blob centres", found)
    row_pitch = nn / np.sqrt(2.0) if pattern.asymmetric else nn

    by_y = np.argsort(yr, kind="stable")
    breaks = np.where(np.diff(yr[by_y]) > 0.5 * row_pitch)[0]
    rows = np.split(by_y, breaks + 1)
    if len(rows) != pattern.rows:
        return PatternObservation.insufficient(
            f"found {len(rows)} rows, expected {pattern.rows}", found)

    row_y = np.array([np.median(yr[r]) for r in rows])
    row_gaps = np.diff(row_y)
    med_gap = float(np.median(row_gaps))
    if np.any(np.abs(row_gaps / med_gap - 1.0) > params.spacing_tolerance):
        return PatternObservation.insufficient("uneven row spacing", found)

    row_of = np.empty(len(pts), dtype=int)
    for r, members in enumerate(rows):
        row_of[members] = r
        if len(members) >= 2:
            slope, icpt = np.polyfit(xr[members], yr[members], 1)
            resid = np.abs(yr[members] - (slope * xr[members] + icpt))
            if resid.max() > params.collinearity_tolerance * med_gap:
                return PatternObservation.insufficient(f"row {r} is not collinear", found)

    diffs = []
    for members in rows:
        if len(members) >= 2:
            diffs.extend(np.diff(np.sort(xr[members])))
    if not diffs:
        return PatternObservation.insufficient("cannot estimate column pitch", found)
    col_pitch = float(np.median(diffs))
    if col_pitch <= 0:
        return PatternObservation.insufficient("cannot estimate column pitch", found)

    shift = np.where((row_of % 2 == 1) & pattern.asymmetric, 0.5, 0.0)
    u = xr / col_pitch - shift
    phase = float(np.angle(np.mean(np.exp(2j * np.pi * u)))) / (2 * np.pi)
    k = np.round(u - phase)
    resid = np.abs(u - phase - k)

    on_lattice = resid <= params.spacing_tolerance
    dropped += int(np.count_nonzero(~on_lattice))
    if dropped > max_extra:
        return PatternObservation.insufficient("blobs off the grid lattice", found)
    k = k[on_lattice].astype(int)
    row_of = row_of[on_lattice]
    kept_pts = pts[on_lattice]

    k -= k.min()
    if k.max() != pattern.cols - 1:
        return PatternObservation.insufficient(
            f"column span {k.max() + 1}, expected {pattern.cols}", found)

    grid = np.full((expected, 2), np.nan)
    cell = row_of * pattern.cols + k
    if len(np.unique(cell)) != len(cell):
        return PatternObservation.insufficient("two blobs share a grid cell", found)
    grid[cell] = kept_pts

    missing = np.where(np.isnan(grid[:, 0]))[0]
    if len(missing) > max_missing:
        return PatternObservation.insufficient(
            f"{len(missing)} markers missing, at most {max_missing} tolerated", found)

    if len(missing):
        obj = pattern.object_points()[:, :2].astype(np.float32)
        have = np.where(~np.isnan(grid[:, 0]))[0]
        H, _ = cv2.findHomography(obj[have], grid[have].astype(np.float32), 0)
        if H is None:
            return PatternObservation.insufficient("cannot fit grid homography", found)
        fitted = cv2.perspectiveTransform(obj[have].reshape(-1, 1, 2), H).reshape(-1, 2)
        if np.max(np.linalg.norm(fitted - grid[have], axis=1)) > params.spacing_tolerance * med_gap:
            return PatternObservation.insufficient("grid homography does not fit", found)
        filled = cv2.perspectiveTransform(obj[missing].reshape(-1, 1, 2), H).reshape(-1, 2)
        grid[missing] = filled
        logger.debug("filled %d missing markers from grid homography", len(missing))

    return PatternObservation(
        grid.astype(np.float32),
        blobs_found=found,
        recovered=int(len(missing)),
    )
