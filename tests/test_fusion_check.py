import numpy as np
import pytest

from align_pipeline.ap_types import Outcome
from align_pipeline.config import FiducialSpec, FusionThresholds, PatternSpec
from align_pipeline.errors import ConfigurationError
from align_pipeline.strategies.detect_circles import ConnectedComponentsDetector
from align_pipeline.strategies.detect_fiducial import AprilTagLocator, GridLocator, get_dict
from align_pipeline.strategies.fusion_check import FusionChecker, percentile
from align_pipeline.synthetic import render_circle_grid, render_tag

from conftest import LARGE

# 50 mm tag, 200 px wide at f = 800 -> 200 mm away
TAG = FiducialSpec(kind="apriltag", tag_size_mm=50.0)


def _tag(x, y=140):
    return render_tag(LARGE, tag_id=3, side_px=200, top_left=(x, y))


def _checker(large_camera, thresholds=None, baseline=60.0):
    return FusionChecker(AprilTagLocator(TAG), large_camera, baseline, thresholds)


def test_percentile_nearest_rank():
    """Nearest rank on round(p * (n - 1))."""
    values = np.arange(1, 11, dtype=float)
    assert percentile(values, 0.95) == 10.0
    assert percentile(values, 0.0) == 1.0
    assert percentile([4.0], 0.95) == 4.0
    with pytest.raises(ValueError):
        percentile([], 0.95)


def test_locator_finds_tag_corners():
    """Corners come back in tag order around the pasted square."""
    located = AprilTagLocator(TAG).locate(_tag(220))
    assert located is not None
    corners, obj = located
    assert corners.shape == (4, 2)
    assert obj.shape == (4, 3)
    assert corners[:, 0].min() == pytest.approx(220, abs=1.5)
    assert corners[:, 0].max() == pytest.approx(420, abs=1.5)


def test_locator_respects_marker_id():
    """A configured marker id that is not visible means not found."""
    spec = FiducialSpec(kind="apriltag", marker_id=5)
    assert AprilTagLocator(spec).locate(_tag(220)) is None


def test_unknown_dictionary_rejected():
    """Only known dictionary names are accepted."""
    with pytest.raises(ConfigurationError):
        get_dict("apriltag_99h1")


def test_shifted_tag_statistics(large_camera):
    """A 5 px horizontal shift shows up as dx = 5 on every corner."""
    res = _checker(large_camera).check(_tag(220), _tag(225))

    assert res.corner_count == 4
    assert res.mean_dx == pytest.approx(5.0, abs=0.1)
    assert res.mean_dy == pytest.approx(0.0, abs=0.1)
    assert res.rms == pytest.approx(5.0, abs=0.1)
    assert res.p95 == pytest.approx(5.0, abs=0.1)
    assert res.max_err == pytest.approx(5.0, abs=0.1)
    assert res.outcome is Outcome.FAILED_TOLERANCE


def test_physical_units_from_pose(large_camera):
    """mm = px * Z / f with Z from the tag pose."""
    res = _checker(large_camera).check(_tag(220), _tag(225))
    assert res.depth_mm == pytest.approx(200.0, rel=0.02)
    assert res.rms_mm == pytest.approx(1.25, rel=0.03)
    assert res.max_mm == pytest.approx(1.25, rel=0.03)


def test_physical_units_from_disparity(large_camera):
    """Disparity depth uses the stereo baseline."""
    thresholds = FusionThresholds(depth_source="disparity")
    res = _checker(large_camera, thresholds, baseline=60.0).check(_tag(220), _tag(225))
    # Z = 800 * 60 / 5
    assert res.depth_mm == pytest.approx(9600.0, rel=0.03)
    assert res.rms_mm == pytest.approx(60.0, rel=0.03)


def test_pass_in_pixels(large_camera):
    """Loose pixel limits pass the same pair."""
    thresholds = FusionThresholds(rms_max=6.0, p95_max=6.0, max_max=6.0)
    res = _checker(large_camera, thresholds).check(_tag(220), _tag(225))
    assert res.outcome is Outcome.PASSED
    assert res.passed


def test_pass_in_millimetres(large_camera):
    """Millimetre limits compare the converted statistics."""
    thresholds = FusionThresholds(rms_max=2.0, p95_max=2.0, max_max=2.0, threshold_units="mm")
    res = _checker(large_camera, thresholds).check(_tag(220), _tag(225))
    assert res.outcome is Outcome.PASSED


def test_millimetres_without_depth_is_degenerate(large_camera):
    """No disparity means no depth, so mm limits cannot be judged."""
    thresholds = FusionThresholds(threshold_units="mm", depth_source="disparity")
    res = _checker(large_camera, thresholds).check(_tag(220), _tag(220))
    assert res.outcome is Outcome.DEGENERATE
    assert res.rms == pytest.approx(0.0, abs=0.05)
    assert res.rms_mm is None


def test_identical_images_pass(large_camera):
    """Perfect fusion is a pass with zero error."""
    res = _checker(large_camera).check(_tag(220), _tag(220))
    assert res.passed
    assert res.max_err == pytest.approx(0.0, abs=1e-3)


def test_missing_tag_is_insufficient(large_camera):
    """Tag not found in one eye is a detection failure, not a tolerance failure."""
    blank = np.full((480, 640), 255, dtype=np.uint8)
    res = _checker(large_camera).check(_tag(220), blank)
    assert res.outcome is Outcome.INSUFFICIENT_OBSERVATION
    assert res.outcome.is_detection_failure
    assert res.rms is None


def test_grid_as_fiducial(large_camera):
    """The circle grid itself can serve as the fusion fiducial."""
    pattern = PatternSpec()
    locator = GridLocator(ConnectedComponentsDetector(pattern))
    left = render_circle_grid(LARGE, large_camera, pattern)
    right = render_circle_grid(LARGE, large_camera, pattern, shift_px=(1.0, 0.0))
    res = FusionChecker(locator, large_camera, 60.0).check(left, right)
    assert res.corner_count == pattern.count
    assert res.mean_dx == pytest.approx(1.0, abs=0.1)
    assert res.outcome is Outcome.PASSED
    assert res.depth_mm == pytest.approx(400.0, rel=0.02)


def test_bad_units_rejected(large_camera):
    """Unknown unit names fail at construction."""
    with pytest.raises(ConfigurationError):
        _checker(large_camera, FusionThresholds(threshold_units="inch"))


def _two_tags(left_id, right_id, y=140):
    a = render_tag(LARGE, tag_id=left_id, side_px=200, top_left=(40, y))
    b = render_tag(LARGE, tag_id=right_id, side_px=200, top_left=(380, y))
    return np.minimum(a, b)


def test_locate_all_reports_every_tag():
    """Each visible tag id comes back with its own corners."""
    found = AprilTagLocator(TAG).locate_all(_two_tags(1, 3))
    assert sorted(found) == [1, 3]
    assert found[1][:, 0].max() < found[3][:, 0].min()


def test_sixteen_bit_images_are_measured(large_camera):
    """16-bit rectified images are checked like 8-bit ones."""
    left = _tag(220).astype(np.uint16) * 257
    right = _tag(225).astype(np.uint16) * 257
    res = _checker(large_camera).check(left, right)
    assert res.outcome is Outcome.FAILED_TOLERANCE
    assert res.mean_dx == pytest.approx(5.0, abs=0.1)
    assert res.depth_mm == pytest.approx(200.0, rel=0.02)


def test_eyes_compare_the_tag_they_share(large_camera):
    """An extra tag in one eye does not get compared with a different tag in the other."""
    right = render_tag(LARGE, tag_id=3, side_px=200, top_left=(380, 140))
    res = _checker(large_camera).check(_two_tags(1, 3), right)
    assert res.outcome is Outcome.PASSED
    assert res.max_err == pytest.approx(0.0, abs=1e-3)


def test_no_shared_tag_is_insufficient(large_camera):
    """Different tags in the two eyes are a detection failure, not a fusion error."""
    left = render_tag(LARGE, tag_id=1, side_px=200, top_left=(220, 140))
    right = render_tag(LARGE, tag_id=3, side_px=200, top_left=(220, 140))
    res = _checker(large_camera).check(left, right)
    assert res.outcome is Outcome.INSUFFICIENT_OBSERVATION
    assert res.rms is None
