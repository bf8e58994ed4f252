import cv2
import numpy as np
import pytest

from rgbd_streaming.domain.camera_model import Intrinsics
from rgbd_streaming.domain.owned_buffer import BufferOwnership, OwnedBuffer
from rgbd_streaming.utils.depth_processor import (
    DepthBackProjector,
    back_project_depth,
    mirror_color,
    mirror_depth,
    prepare_color,
)


class TestBackProjection:

    def test_principal_point_and_corner(self, intrinsics, flat_depth):
        points, valid = back_project_depth(flat_depth, intrinsics)

        assert points.shape == (480, 640, 3)
        assert points.dtype == np.float32
        assert valid.all()

        center = points[239, 319]
        assert abs(center[2] - 1.0) < 1e-6
        assert abs(center[0]) < 1e-3
        assert abs(center[1]) < 1e-3

        corner = points[0, 0]
        assert corner[0] == pytest.approx(-319.5 / 525.0, abs=1e-5)
        assert corner[1] == pytest.approx(-239.5 / 525.0, abs=1e-5)
        assert corner[0] == pytest.approx(-0.6086, abs=1e-4)
        assert corner[1] == pytest.approx(-0.4562, abs=1e-4)

    def test_invalid_depth_keeps_grid(self, intrinsics, flat_depth):
        depth = flat_depth.copy()
        depth[10:20, 30:50] = 0
        depth[:, -1] = 0

        points, valid = back_project_depth(depth, intrinsics)

        assert points.shape[:2] == depth.shape
        assert valid.size == depth.size
        assert not valid[10:20, 30:50].any()
        assert not valid[:, -1].any()
        assert np.isnan(points[~valid]).all()
        assert np.isfinite(points[valid]).all()
        assert valid.sum() == np.count_nonzero(depth)

    def test_reused_buffers_hold_no_stale_values(self, intrinsics, flat_depth):
        projector = DepthBackProjector()
        points = np.empty((480, 640, 3), dtype=np.float32)
        valid = np.empty((480, 640), dtype=bool)

        assert projector.back_project(flat_depth, intrinsics, points, valid) == 480 * 640

        holes = flat_depth.copy()
        holes[100:110, 100:110] = 0
        count = projector.back_project(holes, intrinsics, points, valid)

        assert count == 480 * 640 - 100
        assert np.isnan(points[100:110, 100:110]).all()
        assert not valid[100:110, 100:110].any()

    def test_depth_scale(self, intrinsics):
        depth = np.full((480, 640), 2500, dtype=np.uint16)
        points, _ = back_project_depth(depth, intrinsics)
        assert points[200, 300, 2] == pytest.approx(2.5, abs=1e-6)

    def test_all_invalid(self, intrinsics):
        points, valid = back_project_depth(np.zeros((480, 640), dtype=np.uint16), intrinsics)
        assert not valid.any()
        assert np.isnan(points).all()

    def test_lens_distortion_is_removed(self, intrinsics, flat_depth):
        distorted = Intrinsics(fx=525.0, fy=525.0, cx=319.5, cy=239.5, width=640, height=480,
                               coeffs=(0.05, -0.01, 0.001, 0.0005, 0.0))
        pinhole_points, _ = back_project_depth(flat_depth, intrinsics)
        points, valid = back_project_depth(flat_depth, distorted)

        assert valid.all()
        np.testing.assert_allclose(points[..., 2], 1.0, atol=1e-6)
        # Positive k1 pulls the corrected corner rays toward the optical axis
        assert abs(points[0, 0, 0]) < abs(pinhole_points[0, 0, 0])

        # Projecting the rays through the same lens lands back on the pixels
        sample = points[::40, ::40].reshape(-1, 3).astype(np.float64)
        pixels, _ = cv2.projectPoints(sample, np.zeros(3), np.zeros(3),
                                      distorted.as_matrix(), distorted.distortion_array())
        v, u = np.mgrid[0:480:40, 0:640:40]
        np.testing.assert_allclose(pixels.reshape(-1, 2), np.stack([u, v], axis=-1).reshape(-1, 2), atol=0.05)

    def test_zero_distortion_matches_pinhole(self, intrinsics, flat_depth):
        zero = Intrinsics(fx=525.0, fy=525.0, cx=319.5, cy=239.5, width=640, height=480,
                          coeffs=(0.0, 0.0, 0.0, 0.0, 0.0))
        assert not zero.has_distortion
        np.testing.assert_array_equal(back_project_depth(flat_depth, zero)[0],
                                      back_project_depth(flat_depth, intrinsics)[0])

    def test_mismatched_buffers_rejected(self, intrinsics, flat_depth):
        projector = DepthBackProjector()
        with pytest.raises(ValueError):
            projector.back_project(
                flat_depth, intrinsics,
                np.empty((10, 10, 3), dtype=np.float32), np.empty((10, 10), dtype=bool)
            )


class TestMirror:

    def test_mirror_depth_twice_is_identity(self):
        depth = np.random.default_rng(0).integers(0, 5000, size=(48, 64), dtype=np.uint16)
        np.testing.assert_array_equal(mirror_depth(mirror_depth(depth)), depth)

    def test_mirror_depth_is_horizontal(self):
        depth = np.arange(12, dtype=np.uint16).reshape(3, 4)
        np.testing.assert_array_equal(mirror_depth(depth), depth[:, ::-1])

    def test_mirror_depth_into_out(self):
        depth = np.arange(12, dtype=np.uint16).reshape(3, 4)
        out = np.zeros_like(depth)
        result = mirror_depth(depth, out=out)
        assert result is out
        np.testing.assert_array_equal(out, depth[:, ::-1])

    def test_mirror_color_twice_is_identity(self, gradient_color):
        np.testing.assert_array_equal(mirror_color(mirror_color(gradient_color)), gradient_color)

    def test_vertical_flip_code(self):
        depth = np.arange(12, dtype=np.uint16).reshape(3, 4)
        np.testing.assert_array_equal(mirror_depth(depth, flip_code=0), depth[::-1, :])


class TestPrepareColor:

    def test_rgb_without_mirror_is_borrowed(self, gradient_color):
        buffer = prepare_color(gradient_color, mirror=False)
        assert buffer.ownership is BufferOwnership.BORROWED
        assert np.shares_memory(buffer.array, gradient_color)
        assert not buffer.array.flags.writeable

    def test_rgba_is_reduced_to_rgb(self, gradient_color):
        alpha = np.full(gradient_color.shape[:2] + (1,), 255, dtype=np.uint8)
        rgba = np.concatenate([gradient_color, alpha], axis=2)

        buffer = prepare_color(rgba, mirror=False)

        assert buffer.is_owned
        assert buffer.array.shape == gradient_color.shape
        np.testing.assert_array_equal(buffer.array, gradient_color)

    def test_mirrored_rgba(self, gradient_color):
        alpha = np.zeros(gradient_color.shape[:2] + (1,), dtype=np.uint8)
        rgba = np.concatenate([gradient_color, alpha], axis=2)

        buffer = prepare_color(rgba, mirror=True)
        np.testing.assert_array_equal(buffer.array, gradient_color[:, ::-1])

    def test_owned_buffer_is_reused(self, gradient_color):
        first = prepare_color(gradient_color, mirror=True)
        second = prepare_color(gradient_color, mirror=True, reuse=first)
        assert second is first

    def test_borrowed_buffer_is_not_reused_for_writes(self, gradient_color):
        borrowed = OwnedBuffer.borrow(gradient_color)
        buffer = prepare_color(gradient_color, mirror=True, reuse=borrowed)
        assert buffer is not borrowed
        assert buffer.is_owned

    def test_bad_channel_count(self):
        with pytest.raises(ValueError):
            prepare_color(np.zeros((4, 4, 2), dtype=np.uint8), mirror=False)
