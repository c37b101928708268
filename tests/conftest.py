import cv2
import numpy as np
import pytest

from align_pipeline.config import FiducialSpec, PatternSpec
from align_pipeline.synthetic import default_camera_matrix, write_rectified_rig
from align_pipeline.transforms import euler_to_matrix
from stereo_align.config import CalibrationPaths, PipelineConfig, RuntimeConfig

# Small frames keep the FileStorage maps quick to write and parse.
SMALL = (320, 240)
LARGE = (640, 480)


@pytest.fixture
def pattern():
    return PatternSpec()


@pytest.fixture
def small_camera():
    return default_camera_matrix(SMALL)


@pytest.fixture
def large_camera():
    return default_camera_matrix(LARGE)


@pytest.fixture
def rig_files(tmp_path):
    """Calibration artifacts of an ideal rectified rig with 320x240 frames."""
    return write_rectified_rig(str(tmp_path / "calib"), SMALL)


@pytest.fixture
def pipeline_config(rig_files):
    return PipelineConfig(
        rig_name="test",
        width=SMALL[0],
        height=SMALL[1],
        calibration=CalibrationPaths(**rig_files),
        fiducial=FiducialSpec(kind="grid"),
        runtime=RuntimeConfig(submit_capacity=8, stage_capacity=2, result_capacity=64,
                              shutdown_grace_sec=10.0, poll_interval_sec=0.01),
    )


def projected_centers(pattern, camera_matrix, roll=0.0, pitch=0.0, yaw=0.0, distance_mm=400.0):
    """Exact image positions of the marker centres, row-major."""
    obj = pattern.object_points()
    centre = np.array([*obj[:, :2].mean(axis=0), 0.0])
    R = euler_to_matrix(roll, pitch, yaw)
    rvec, _ = cv2.Rodrigues(R)
    tvec = np.array([0.0, 0.0, distance_mm]) - R @ centre
    pts, _ = cv2.projectPoints(obj, rvec, tvec, np.asarray(camera_matrix, dtype=np.float64), np.zeros(5))
    return pts.reshape(-1, 2)


@pytest.fixture
def project_centers():
    return projected_centers
