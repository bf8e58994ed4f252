import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from rgbd_streaming.utils.depth_processor import back_project_depth
from rgbd_streaming.utils.transformation_matrix import TransformationMatrix


@pytest.fixture
def organized_cloud(intrinsics, flat_depth):
    depth = flat_depth.copy()
    depth[::7, ::5] = 0
    depth[200:260, 300:360] = 1750
    points, valid = back_project_depth(depth, intrinsics)
    return points, valid


@pytest.fixture
def rigid_transform():
    rotation = Rotation.from_euler("xyz", [2.0, -5.0, 1.5], degrees=True).as_matrix()
    translation = np.array([0.025, -0.004, 0.001])
    return rotation, translation


def test_identity_is_noop(organized_cloud):
    points, valid = organized_cloud
    original = points.copy()

    TransformationMatrix.transform_organized_cloud(points, np.eye(3), np.zeros(3))

    np.testing.assert_allclose(points[valid], original[valid], atol=1e-7)
    assert np.isnan(points[~valid]).all()


def test_transform_then_inverse_restores(organized_cloud, rigid_transform):
    points, valid = organized_cloud
    original = points.copy()
    rotation, translation = rigid_transform

    T = TransformationMatrix.create_from_rotation_translation(rotation, translation)
    T_inv = TransformationMatrix.invert(T)
    R_inv, t_inv = TransformationMatrix.decompose(T_inv)

    scratch = TransformationMatrix.transform_organized_cloud(points, rotation, translation)
    assert not np.allclose(points[valid], original[valid])

    reused = TransformationMatrix.transform_organized_cloud(points, R_inv, t_inv, scratch=scratch)
    assert reused is scratch

    np.testing.assert_allclose(points[valid], original[valid], atol=1e-5)
    assert np.isnan(points[~valid]).all()


def test_organized_cloud_matches_point_transform(organized_cloud, rigid_transform):
    points, valid = organized_cloud
    rotation, translation = rigid_transform
    T = TransformationMatrix.create_from_rotation_translation(rotation, translation)

    expected = TransformationMatrix.transform_points(points[valid].astype(np.float64), T)
    TransformationMatrix.transform_organized_cloud(points, rotation, translation)

    np.testing.assert_allclose(points[valid], expected, atol=1e-5)


def test_create_from_rotation_vector():
    rotvec = np.array([0.0, 0.0, np.pi / 2])
    T = TransformationMatrix.create_from_rotation_translation(rotvec, [1.0, 2.0, 3.0])

    point = TransformationMatrix.transform_points(np.array([[1.0, 0.0, 0.0]]), T)
    np.testing.assert_allclose(point, [[1.0, 3.0, 3.0]], atol=1e-12)


def test_compose_with_inverse_is_identity(rigid_transform):
    T = TransformationMatrix.create_from_rotation_translation(*rigid_transform)
    composed = TransformationMatrix.compose(T, TransformationMatrix.invert(T))
    assert TransformationMatrix.is_identity(composed, tolerance=1e-12)


def test_validate(rigid_transform):
    T = TransformationMatrix.create_from_rotation_translation(*rigid_transform)
    assert TransformationMatrix.validate(T)[0]

    scaled = T.copy()
    scaled[:3, :3] *= 2.0
    is_valid, message = TransformationMatrix.validate(scaled)
    assert not is_valid
    assert "orthogonal" in message

    assert not TransformationMatrix.validate(np.eye(3))[0]
