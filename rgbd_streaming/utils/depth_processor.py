"""Depth/color grid preparation and pinhole back-projection (CPU-only)."""
import logging
from typing import Optional, Tuple

import cv2
import numpy as np

from rgbd_streaming.config import DEPTH_SCALE, INVALID_DEPTH_VALUE, MIRROR_FLIP_CODE
from rgbd_streaming.domain.camera_model import Intrinsics
from rgbd_streaming.domain.owned_buffer import OwnedBuffer

logger = logging.getLogger(__name__)


# ============================================================================
# MIRROR CORRECTION
# ============================================================================

def mirror_depth(depth: np.ndarray,
                 out: Optional[np.ndarray] = None,
                 flip_code: int = MIRROR_FLIP_CODE) -> np.ndarray:
    """
    Undo the sensor mirroring of a depth grid.

    Args:
        depth: (rows, cols) depth grid
        out: Optional destination with the same shape/dtype (reused)
        flip_code: OpenCV flip code (1 horizontal, 0 vertical, -1 both)

    Returns:
        Mirrored depth grid (``out`` when given)
    """
    if out is None or out.shape != depth.shape or out.dtype != depth.dtype:
        return cv2.flip(depth, flip_code)
    cv2.flip(depth, flip_code, dst=out)
    return out


def mirror_color(color: np.ndarray,
                 out: Optional[np.ndarray] = None,
                 flip_code: int = MIRROR_FLIP_CODE) -> np.ndarray:
    """Undo the sensor mirroring of a color image (same contract as mirror_depth)."""
    if out is None or out.shape != color.shape or out.dtype != color.dtype:
        return cv2.flip(color, flip_code)
    cv2.flip(color, flip_code, dst=out)
    return out


# ============================================================================
# COLOR PREPARATION
# ============================================================================

def prepare_color(color: np.ndarray,
                  mirror: bool,
                  reuse: Optional[OwnedBuffer] = None,
                  flip_code: int = MIRROR_FLIP_CODE) -> OwnedBuffer:
    """
    Turn the incoming color grid into a 3-channel buffer for the cloud.

    A 3-channel image that needs no mirroring is borrowed as is. Everything
    else (RGBA/BGRA input, mirroring) produces a pipeline-owned buffer,
    written into ``reuse`` when that buffer is owned and has the right shape.

    Args:
        color: (rows, cols, 3|4) uint8 image
        mirror: Apply mirror correction
        reuse: Previous buffer of the same stream (may be released/borrowed)
        flip_code: OpenCV flip code used when mirroring

    Returns:
        OwnedBuffer holding (rows, cols, 3) uint8 colors
    """
    if color.ndim != 3 or color.shape[2] not in (3, 4):
        raise ValueError(f"Color must be (rows, cols, 3|4), got shape {color.shape}")

    if color.shape[2] == 3 and not mirror:
        return OwnedBuffer.borrow(color)

    target_shape = color.shape[:2] + (3,)
    if (reuse is not None and reuse.is_owned and not reuse.released
            and reuse.array.shape == target_shape and reuse.array.dtype == np.uint8):
        buffer = reuse
    else:
        buffer = OwnedBuffer.own(np.empty(target_shape, dtype=np.uint8))

    dst = buffer.array
    if color.shape[2] == 4:
        # Alpha channel carries nothing for the cloud
        cv2.cvtColor(color, cv2.COLOR_RGBA2RGB, dst=dst)
        if mirror:
            cv2.flip(dst, flip_code, dst=dst)
    else:
        cv2.flip(color, flip_code, dst=dst)

    return buffer


# ============================================================================
# BACK-PROJECTION
# ============================================================================

def undistorted_rays(intrinsics: Intrinsics, shape: Tuple[int, int]) -> Tuple[np.ndarray, np.ndarray]:
    """
    Normalized ray coordinates of every pixel with lens distortion removed.

    Args:
        intrinsics: Intrinsics carrying the distortion coefficients
        shape: Grid shape (rows, cols)

    Returns:
        Tuple of (x, y) float32 tables of shape (rows, cols), so that a pixel
        at depth Z back-projects to (x * Z, y * Z, Z)
    """
    rows, cols = shape
    v, u = np.mgrid[0:rows, 0:cols]
    pixels = np.stack([u, v], axis=-1).reshape(-1, 1, 2).astype(np.float64)

    rays = cv2.undistortPoints(pixels, intrinsics.as_matrix(), intrinsics.distortion_array())
    rays = rays.reshape(rows, cols, 2)
    logger.debug(f"Built undistorted ray tables for {cols}x{rows} ({len(intrinsics.coeffs)} coefficients)")
    return (np.ascontiguousarray(rays[..., 0], dtype=np.float32),
            np.ascontiguousarray(rays[..., 1], dtype=np.float32))


class DepthBackProjector:
    """
    Pinhole back-projection of depth grids into organized point clouds.

    For pixel (u, v) with depth d (millimeters):
        Z = d * DEPTH_SCALE
        X = (u - cx) * Z / fx
        Y = (v - cy) * Z / fy

    The per-column and per-row ray factors (u - cx) / fx and (v - cy) / fy
    are computed once per (intrinsics, grid shape) and reused, so a frame
    costs three multiplications per cell.

    With lens distortion coefficients the rays no longer separate into a row
    and a column factor: full (rows, cols) tables of undistorted normalized
    coordinates are built once with cv2.undistortPoints instead.

    Usage:
        projector = DepthBackProjector()
        points = np.empty((480, 640, 3), dtype=np.float32)
        valid = np.empty((480, 640), dtype=bool)
        projector.back_project(depth, intrinsics, points, valid)
    """

    def __init__(self, depth_scale: float = DEPTH_SCALE):
        self.depth_scale = depth_scale
        self._cache_key: Optional[Tuple[Intrinsics, Tuple[int, int]]] = None
        self._x_factors: Optional[np.ndarray] = None
        self._y_factors: Optional[np.ndarray] = None
        self._z_buffer: Optional[np.ndarray] = None

    def _ray_factors(self, intrinsics: Intrinsics, shape: Tuple[int, int]) -> Tuple[np.ndarray, np.ndarray]:
        key = (intrinsics, shape)
        if key != self._cache_key:
            rows, cols = shape
            if (rows, cols) != intrinsics.shape:
                logger.warning(
                    f"Depth grid {cols}x{rows} differs from intrinsics size "
                    f"{intrinsics.width}x{intrinsics.height}"
                )
            if intrinsics.has_distortion:
                self._x_factors, self._y_factors = undistorted_rays(intrinsics, shape)
            else:
                u = np.arange(cols, dtype=np.float64)
                v = np.arange(rows, dtype=np.float64)
                self._x_factors = ((u - intrinsics.cx) / intrinsics.fx).astype(np.float32)[np.newaxis, :]
                self._y_factors = ((v - intrinsics.cy) / intrinsics.fy).astype(np.float32)[:, np.newaxis]
            self._z_buffer = np.empty(shape, dtype=np.float32)
            self._cache_key = key
        return self._x_factors, self._y_factors

    def back_project(self,
                     depth: np.ndarray,
                     intrinsics: Intrinsics,
                     points: np.ndarray,
                     valid: np.ndarray) -> int:
        """
        Fill an organized cloud from a depth grid.

        Every cell is written: cells with depth == INVALID_DEPTH_VALUE get
        NaN coordinates and valid == False, so nothing from a previous frame
        survives in a reused buffer.

        Args:
            depth: (rows, cols) integer depth in millimeters
            intrinsics: Depth sensor intrinsics
            points: (rows, cols, 3) float32 destination
            valid: (rows, cols) bool destination

        Returns:
            Number of valid points
        """
        if depth.ndim != 2:
            raise ValueError(f"Depth must be a 2D grid, got shape {depth.shape}")
        shape = depth.shape
        if points.shape != shape + (3,) or valid.shape != shape:
            raise ValueError(
                f"Output buffers {points.shape}/{valid.shape} do not match depth grid {shape}"
            )

        x_factors, y_factors = self._ray_factors(intrinsics, shape)
        z = self._z_buffer

        np.multiply(depth, self.depth_scale, out=z, casting="unsafe")
        np.not_equal(depth, INVALID_DEPTH_VALUE, out=valid)

        np.multiply(x_factors, z, out=points[..., 0])
        np.multiply(y_factors, z, out=points[..., 1])
        points[..., 2] = z

        points[~valid] = np.nan
        return int(np.count_nonzero(valid))


def back_project_depth(depth: np.ndarray,
                       intrinsics: Intrinsics,
                       depth_scale: float = DEPTH_SCALE) -> Tuple[np.ndarray, np.ndarray]:
    """
    One-shot back-projection into newly allocated buffers.

    Returns:
        Tuple of (points (rows, cols, 3) float32, valid (rows, cols) bool)
    """
    rows, cols = depth.shape
    points = np.empty((rows, cols, 3), dtype=np.float32)
    valid = np.empty((rows, cols), dtype=bool)
    DepthBackProjector(depth_scale).back_project(depth, intrinsics, points, valid)
    return points, valid
