"""
Integral Image Normal Estimation for Organized Point Clouds

Per-point surface normals from an organized (rows, cols, 3) cloud, using the
average 3D gradient method:

    dx = mean(points right of p) - mean(points left of p)
    dy = mean(points below p)    - mean(points above p)
    n  = normalize(dx x dy), oriented toward the sensor origin

Window means come from integral images (summed area tables) of the points and
of the validity mask, so the cost per point does not depend on the window
size. The method needs the cloud to stay a rectangular grid aligned with the
depth image: invalid points must keep their slot (NaN), never be compacted.
"""

import logging
from typing import Optional, Tuple

import numpy as np

from rgbd_streaming.config import MAX_DEPTH_CHANGE_FACTOR, NORMAL_SMOOTHING_SIZE

logger = logging.getLogger(__name__)


class IntegralImageNormalEstimator:
    """
    Normal estimation with reusable integral image buffers.

    Usage:
        estimator = IntegralImageNormalEstimator(smoothing_size=5)
        normals = np.empty_like(points)
        estimator.compute(points, valid, normals)
    """

    def __init__(self,
                 smoothing_size: int = NORMAL_SMOOTHING_SIZE,
                 max_depth_change_factor: float = MAX_DEPTH_CHANGE_FACTOR):
        """
        Initialize normal estimator.

        Args:
            smoothing_size: Half window size in pixels (>= 1)
            max_depth_change_factor: Relative depth jump (fraction of z) between
                                     direct neighbours treated as a discontinuity
        """
        if smoothing_size < 1:
            raise ValueError(f"smoothing_size must be >= 1, got {smoothing_size}")
        self.smoothing_size = int(smoothing_size)
        self.max_depth_change_factor = float(max_depth_change_factor)

        self._shape: Optional[Tuple[int, int]] = None
        self._point_integral: Optional[np.ndarray] = None
        self._count_integral: Optional[np.ndarray] = None

    # ========================================================================
    # INTEGRAL IMAGES
    # ========================================================================

    def _allocate(self, shape: Tuple[int, int]):
        if shape == self._shape:
            return
        rows, cols = shape
        self._point_integral = np.zeros((rows + 1, cols + 1, 3), dtype=np.float64)
        self._count_integral = np.zeros((rows + 1, cols + 1), dtype=np.float64)
        self._shape = shape

    def _build_integrals(self, points: np.ndarray, valid: np.ndarray):
        P = self._point_integral
        C = self._count_integral

        inner = P[1:, 1:]
        inner[...] = points
        inner[~valid] = 0.0
        np.cumsum(inner, axis=0, out=inner)
        np.cumsum(inner, axis=1, out=inner)

        counts = C[1:, 1:]
        counts[...] = valid
        np.cumsum(counts, axis=0, out=counts)
        np.cumsum(counts, axis=1, out=counts)

    @staticmethod
    def _box(integral: np.ndarray,
             r0: np.ndarray, r1: np.ndarray,
             c0: np.ndarray, c1: np.ndarray) -> np.ndarray:
        """Sum over rows [r0, r1) x cols [c0, c1) for every pixel at once."""
        r0 = r0[:, np.newaxis]
        r1 = r1[:, np.newaxis]
        c0 = c0[np.newaxis, :]
        c1 = c1[np.newaxis, :]
        return integral[r1, c1] - integral[r0, c1] - integral[r1, c0] + integral[r0, c0]

    def _window_mean(self, r0, r1, c0, c1) -> Tuple[np.ndarray, np.ndarray]:
        sums = self._box(self._point_integral, r0, r1, c0, c1)
        counts = self._box(self._count_integral, r0, r1, c0, c1)
        with np.errstate(invalid="ignore", divide="ignore"):
            means = sums / counts[..., np.newaxis]
        return means, counts

    # ========================================================================
    # DEPTH DISCONTINUITIES
    # ========================================================================

    def _discontinuities(self, points: np.ndarray, valid: np.ndarray) -> np.ndarray:
        """Mask of points whose direct neighbours jump in depth."""
        z = np.where(valid, points[..., 2], np.nan)
        threshold = self.max_depth_change_factor * z
        edges = np.zeros(valid.shape, dtype=bool)

        with np.errstate(invalid="ignore"):
            jump_x = np.abs(z[:, 1:] - z[:, :-1]) > threshold[:, 1:]
            jump_y = np.abs(z[1:, :] - z[:-1, :]) > threshold[1:, :]

        edges[:, 1:] |= jump_x
        edges[:, :-1] |= jump_x
        edges[1:, :] |= jump_y
        edges[:-1, :] |= jump_y
        return edges

    # ========================================================================
    # NORMALS
    # ========================================================================

    def compute(self,
                points: np.ndarray,
                valid: np.ndarray,
                normals: np.ndarray) -> int:
        """
        Estimate normals for an organized cloud.

        Args:
            points: (rows, cols, 3) float cloud, NaN where invalid
            valid: (rows, cols) bool validity mask
            normals: (rows, cols, 3) float destination; cells without a normal
                     are set to NaN

        Returns:
            Number of points that received a normal
        """
        if points.ndim != 3 or points.shape[2] != 3:
            raise ValueError(f"Points must be an organized (rows, cols, 3) grid, got {points.shape}")
        if normals.shape != points.shape or valid.shape != points.shape[:2]:
            raise ValueError("Normals/valid buffers must match the organized cloud")

        rows, cols = valid.shape
        self._allocate((rows, cols))
        self._build_integrals(points, valid)

        r = self.smoothing_size
        v = np.arange(rows)
        u = np.arange(cols)

        row_lo = np.clip(v - r, 0, rows)
        row_hi = np.clip(v + r + 1, 0, rows)
        col_lo = np.clip(u - r, 0, cols)
        col_hi = np.clip(u + r + 1, 0, cols)

        right, n_right = self._window_mean(row_lo, row_hi, u + 1, col_hi)
        left, n_left = self._window_mean(row_lo, row_hi, col_lo, u)
        below, n_below = self._window_mean(v + 1, row_hi, col_lo, col_hi)
        above, n_above = self._window_mean(row_lo, v, col_lo, col_hi)

        dx = right - left
        dy = below - above
        n = np.cross(dx, dy)

        with np.errstate(invalid="ignore", divide="ignore"):
            norm = np.linalg.norm(n, axis=2)
            n /= norm[..., np.newaxis]

        # Flip toward the viewpoint at the origin
        facing_away = np.einsum("ijk,ijk->ij", n, np.nan_to_num(points)) > 0
        n[facing_away] *= -1.0

        has_normal = (
            valid
            & (n_right > 0) & (n_left > 0) & (n_below > 0) & (n_above > 0)
            & (norm > 1e-12)
            & ~self._discontinuities(points, valid)
        )

        normals[...] = n
        normals[~has_normal] = np.nan

        count = int(np.count_nonzero(has_normal))
        logger.debug(f"Normals estimated for {count}/{rows * cols} points")
        return count


def estimate_normals(points: np.ndarray,
                     valid: np.ndarray,
                     smoothing_size: int = NORMAL_SMOOTHING_SIZE,
                     max_depth_change_factor: float = MAX_DEPTH_CHANGE_FACTOR) -> np.ndarray:
    """One-shot normal estimation into a new (rows, cols, 3) float32 array."""
    normals = np.empty(points.shape, dtype=np.float32)
    IntegralImageNormalEstimator(smoothing_size, max_depth_change_factor).compute(points, valid, normals)
    return normals
