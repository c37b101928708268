import numpy as np
import pytest

from align_pipeline.ap_types import Outcome, PatternObservation
from align_pipeline.config import PoseTolerance
from align_pipeline.strategies.detect_circles import ConnectedComponentsDetector
from align_pipeline.strategies.localize_pnp import PoseEstimator, is_collinear
from align_pipeline.synthetic import render_circle_grid

from conftest import LARGE


@pytest.mark.parametrize("roll,pitch,yaw", [
    (0.0, 0.0, 0.0),
    (3.0, -6.0, 7.0),
    (-4.0, 8.0, -5.0),
])
def test_recovers_rendered_pose(pattern, large_camera, roll, pitch, yaw):
    """Angles from a rendered view are within half a degree of the truth."""
    img = render_circle_grid(LARGE, large_camera, pattern, roll=roll, pitch=pitch, yaw=yaw)
    obs = ConnectedComponentsDetector(pattern).detect(img)
    est = PoseEstimator(large_camera, np.zeros(5), pattern)

    res = est.estimate(obs)

    assert res.outcome is Outcome.PASSED
    assert res.passed
    assert res.roll == pytest.approx(roll, abs=0.5)
    assert res.pitch == pytest.approx(pitch, abs=0.5)
    assert res.yaw == pytest.approx(yaw, abs=0.5)
    assert res.reprojection_error < 0.5
    assert res.tvec[2] > 0


def test_exact_centres_give_exact_angles(pattern, large_camera, project_centers):
    """With noise-free centres the decomposition matches the rendering convention."""
    pts = project_centers(pattern, large_camera, roll=2.0, pitch=-3.0, yaw=4.0)
    est = PoseEstimator(large_camera, np.zeros(5), pattern)
    res = est.estimate(PatternObservation(pts.astype(np.float32), blobs_found=len(pts)))
    assert res.roll == pytest.approx(2.0, abs=0.05)
    assert res.pitch == pytest.approx(-3.0, abs=0.05)
    assert res.yaw == pytest.approx(4.0, abs=0.05)


@pytest.mark.parametrize("roll,pitch,yaw", [(8.0, 0.0, 0.0), (0.0, 14.0, 0.0), (0.0, 0.0, -14.0)])
def test_out_of_tolerance_fails(pattern, large_camera, project_centers, roll, pitch, yaw):
    """Each axis is gated on its own limit."""
    pts = project_centers(pattern, large_camera, roll=roll, pitch=pitch, yaw=yaw)
    est = PoseEstimator(large_camera, np.zeros(5), pattern)
    res = est.estimate(PatternObservation(pts.astype(np.float32), blobs_found=len(pts)))
    assert res.outcome is Outcome.FAILED_TOLERANCE
    assert not res.passed


def test_tolerance_is_configurable(pattern, large_camera, project_centers):
    """A looser roll limit turns the same view into a pass."""
    pts = project_centers(pattern, large_camera, roll=8.0)
    est = PoseEstimator(large_camera, np.zeros(5), pattern, PoseTolerance(roll_deg=10.0))
    res = est.estimate(PatternObservation(pts.astype(np.float32), blobs_found=len(pts)))
    assert res.passed


def test_insufficient_observation_is_not_solved(pattern, large_camera):
    """No markers means an insufficient result with zero angles."""
    est = PoseEstimator(large_camera, np.zeros(5), pattern)
    res = est.estimate(PatternObservation.insufficient("no blobs"))
    assert res.outcome is Outcome.INSUFFICIENT_OBSERVATION
    assert res.outcome.is_detection_failure
    assert (res.roll, res.pitch, res.yaw) == (0.0, 0.0, 0.0)


def test_collinear_points_are_degenerate(pattern, large_camera):
    """Markers on a single line cannot define a plane."""
    xs = np.linspace(100.0, 500.0, pattern.count)
    pts = np.stack([xs, np.full_like(xs, 240.0)], axis=1).astype(np.float32)
    est = PoseEstimator(large_camera, np.zeros(5), pattern)
    res = est.estimate(PatternObservation(pts, blobs_found=len(pts)))
    assert res.outcome is Outcome.DEGENERATE
    assert is_collinear(pts)


def test_scrambled_points_are_degenerate(pattern, large_camera, project_centers):
    """Points that do not fit the pattern give a reprojection failure."""
    pts = project_centers(pattern, large_camera)
    rng = np.random.default_rng(11)
    scrambled = pts[rng.permutation(len(pts))].astype(np.float32)
    est = PoseEstimator(large_camera, np.zeros(5), pattern)
    res = est.estimate(PatternObservation(scrambled, blobs_found=len(pts)))
    assert res.outcome is Outcome.DEGENERATE


def test_wrong_point_count_is_degenerate(pattern, large_camera, project_centers):
    """The observation must hold exactly one point per marker."""
    pts = project_centers(pattern, large_camera)[:10].astype(np.float32)
    est = PoseEstimator(large_camera, np.zeros(5), pattern)
    assert est.estimate(PatternObservation(pts, blobs_found=10)).outcome is Outcome.DEGENERATE
