import numpy as np
import pytest

from align_pipeline.errors import ConfigurationError
from align_pipeline.services.calib import (
    load_calibration,
    load_intrinsics,
    read_nodes,
    write_nodes,
)
from align_pipeline.synthetic import write_rectified_rig

from conftest import SMALL


def _load(paths, size=SMALL):
    return load_calibration(size, paths["left_intrinsics"], paths["right_intrinsics"],
                            paths["stereo_extrinsics"], paths["rectify_params"], paths["rectify_maps"])


def test_load_rectified_rig(rig_files):
    """All five artifacts load into one geometry object."""
    g = _load(rig_files)
    assert g.image_size == SMALL
    assert g.left_camera_matrix.shape == (3, 3)
    assert g.left_dist_coeffs.shape == (1, 5)
    assert g.P1.shape == (3, 4)
    assert g.Q.shape == (4, 4)
    assert g.left_map1.shape == (SMALL[1], SMALL[0])
    assert g.baseline_mm == pytest.approx(60.0)


def test_geometry_arrays_are_read_only(rig_files):
    """Stages share the geometry, so nobody may write to it."""
    g = _load(rig_files)
    with pytest.raises(ValueError):
        g.left_camera_matrix[0, 0] = 1.0
    with pytest.raises(ValueError):
        g.right_map1[0, 0] = 1.0


def test_fixed_point_maps_load(tmp_path):
    """CV_16SC2 map pairs are accepted as well as float pairs."""
    paths = write_rectified_rig(str(tmp_path), SMALL, fixed_point_maps=True)
    g = _load(paths)
    assert g.left_map1.dtype == np.int16
    assert g.left_map1.shape == (SMALL[1], SMALL[0], 2)


def test_json_storage_is_supported(tmp_path):
    """FileStorage picks the format from the extension."""
    path = str(tmp_path / "left.json")
    write_nodes(path, {"camera_matrix": np.eye(3), "dist_coeffs": np.zeros((1, 4))})
    K, dist = load_intrinsics(path)
    assert np.allclose(K, np.eye(3))
    assert dist.shape == (1, 4)


def test_missing_file(rig_files, tmp_path):
    """A path that does not exist is a configuration error."""
    paths = dict(rig_files, stereo_extrinsics=str(tmp_path / "nope.yml"))
    with pytest.raises(ConfigurationError):
        _load(paths)


def test_missing_node(rig_files, tmp_path):
    """A file without the expected node is a configuration error."""
    path = str(tmp_path / "partial.yml")
    write_nodes(path, {"camera_matrix": np.eye(3)})
    with pytest.raises(ConfigurationError, match="dist_coeffs"):
        _load(dict(rig_files, left_intrinsics=path))


def test_wrong_shape(rig_files, tmp_path):
    """Matrices of the wrong shape are rejected."""
    path = str(tmp_path / "bad_k.yml")
    write_nodes(path, {"camera_matrix": np.eye(2), "dist_coeffs": np.zeros((1, 5))})
    with pytest.raises(ConfigurationError, match="camera_matrix"):
        _load(dict(rig_files, right_intrinsics=path))


def test_bad_distortion_length(tmp_path):
    """Distortion vectors must have an OpenCV-supported length."""
    path = str(tmp_path / "bad_d.yml")
    write_nodes(path, {"camera_matrix": np.eye(3), "dist_coeffs": np.zeros((1, 3))})
    with pytest.raises(ConfigurationError):
        load_intrinsics(path)


def test_maps_must_match_image_size(rig_files):
    """Maps built for another resolution are rejected."""
    with pytest.raises(ConfigurationError, match="maps"):
        _load(rig_files, size=(640, 480))


def test_bad_image_size(rig_files):
    """Non-positive image sizes are rejected."""
    with pytest.raises(ConfigurationError):
        _load(rig_files, size=(0, 240))


def test_read_nodes_reports_empty_node(tmp_path):
    """Scalar or absent nodes are not matrices."""
    path = str(tmp_path / "scalar.yml")
    write_nodes(path, {"R": np.eye(3)})
    with pytest.raises(ConfigurationError):
        read_nodes(path, ["T"])
