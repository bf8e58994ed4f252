import numpy as np
import pytest

from rgbd_streaming.domain.camera_model import (
    CameraModel,
    DeviceDimensions,
    Extrinsics,
    Intrinsics,
    intrinsics_from_matrix,
)
from rgbd_streaming.domain.errors import CameraModelError


class TestIntrinsics:

    def test_matrix_round_trip(self, intrinsics):
        K = intrinsics.as_matrix()
        assert K[0, 0] == 525.0 and K[1, 2] == 239.5
        assert intrinsics_from_matrix(K, 640, 480) == intrinsics

    def test_shape_is_rows_cols(self, intrinsics):
        assert intrinsics.shape == (480, 640)

    @pytest.mark.parametrize("kwargs", [
        dict(fx=0.0, fy=525.0, cx=1.0, cy=1.0, width=640, height=480),
        dict(fx=525.0, fy=-1.0, cx=1.0, cy=1.0, width=640, height=480),
        dict(fx=525.0, fy=525.0, cx=1.0, cy=1.0, width=0, height=480),
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(CameraModelError):
            Intrinsics(**kwargs)

    def test_error_is_value_error(self):
        with pytest.raises(ValueError):
            Intrinsics(fx=-1.0, fy=1.0, cx=0.0, cy=0.0, width=1, height=1)

    def test_is_immutable(self, intrinsics):
        with pytest.raises(AttributeError):
            intrinsics.fx = 1.0

    def test_bad_camera_matrix(self):
        with pytest.raises(CameraModelError):
            intrinsics_from_matrix(np.eye(4), 640, 480)

    def test_distortion_coefficients(self, intrinsics):
        lens = intrinsics_from_matrix(intrinsics.as_matrix(), 640, 480, dist_coeffs=np.array([[0.1, -0.2, 0.0, 0.0, 0.05]]))
        assert lens.coeffs == (0.1, -0.2, 0.0, 0.0, 0.05)
        assert lens.has_distortion
        assert lens != intrinsics
        assert lens.to_dict()["coeffs"] == [0.1, -0.2, 0.0, 0.0, 0.05]
        assert not intrinsics.has_distortion

    def test_bad_distortion_length(self):
        with pytest.raises(CameraModelError):
            Intrinsics(fx=525.0, fy=525.0, cx=1.0, cy=1.0, width=640, height=480, coeffs=(0.1, 0.2, 0.3))


class TestExtrinsics:

    def test_identity(self):
        extrinsics = Extrinsics.identity()
        assert extrinsics.is_identity()
        np.testing.assert_array_equal(extrinsics.as_matrix(), np.eye(4))

    def test_translation_only_is_not_identity(self):
        assert not Extrinsics(translation=[0.0, 0.0, 1e-3]).is_identity()

    def test_rejects_non_rotation(self):
        with pytest.raises(CameraModelError):
            Extrinsics(rotation=np.diag([1.0, 1.0, 2.0]))
        with pytest.raises(CameraModelError):
            Extrinsics(rotation=np.diag([1.0, 1.0, -1.0]))
        with pytest.raises(CameraModelError):
            Extrinsics(rotation=np.eye(2))
        with pytest.raises(CameraModelError):
            Extrinsics(translation=[1.0, 2.0])

    def test_arrays_are_read_only(self):
        extrinsics = Extrinsics.from_rotvec([0.0, 0.1, 0.0], [0.02, 0.0, 0.0])
        with pytest.raises(ValueError):
            extrinsics.rotation[0, 0] = 5.0
        with pytest.raises(ValueError):
            extrinsics.translation[0] = 5.0

    def test_inverse(self):
        extrinsics = Extrinsics.from_euler("zyx", [10.0, -4.0, 2.0], [0.05, 0.01, -0.002], degrees=True)
        composed = extrinsics.as_matrix() @ extrinsics.inverse().as_matrix()
        np.testing.assert_allclose(composed, np.eye(4), atol=1e-12)

    def test_equality_and_hash(self):
        a = Extrinsics.from_rotvec([0.0, 0.0, 0.3], [0.1, 0.0, 0.0])
        b = Extrinsics.from_rotvec([0.0, 0.0, 0.3], [0.1, 0.0, 0.0])
        assert a == b
        assert hash(a) == hash(b)
        assert a != Extrinsics.identity()


class TestCameraModel:

    def test_registered(self, intrinsics):
        model = CameraModel.registered(intrinsics)
        assert model.rgb == model.depth == intrinsics
        assert model.extrinsics.is_identity()

    def test_default_extrinsics(self, intrinsics):
        assert CameraModel(rgb=intrinsics, depth=intrinsics).extrinsics.is_identity()

    def test_to_dict(self, intrinsics):
        data = CameraModel.registered(intrinsics).to_dict()
        assert data["depth"]["fx"] == 525.0
        assert data["extrinsics"]["translation"] == [0.0, 0.0, 0.0]


def test_device_dimensions():
    dims = DeviceDimensions(1280, 720, 640, 480)
    assert dims.as_tuple() == (1280, 720, 640, 480)
    assert dims.depth_shape == (480, 640)
    assert dims.rgb_shape == (720, 1280)
