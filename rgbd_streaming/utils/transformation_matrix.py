"""
Rigid Transformations for Depth-to-Color Alignment

This module provides utilities for 4x4 homogeneous transformation matrices
and for applying rigid transforms to organized point clouds in place.

Supports:
- Rotation matrices (3x3) and translation vectors (3,)
- 4x4 homogeneous transformations (compose, invert, validate)
- Point transformations (Nx3)
- In-place transformation of organized (rows, cols, 3) clouds with NaN holes
"""

from typing import Optional, Tuple

import numpy as np
from scipy.spatial.transform import Rotation


class TransformationMatrix:
    """
    Utilities for 4x4 homogeneous transformation matrices.

    Coordinate System Convention:
    - Right-handed coordinate system
    - X: right
    - Y: down
    - Z: forward (camera viewing direction)

    Transformation Matrix Format (4x4):
        [[R11, R12, R13, tx],
         [R21, R22, R23, ty],
         [R31, R32, R33, tz],
         [0,   0,   0,   1]]
    """

    @staticmethod
    def create_from_rotation_translation(rotation: np.ndarray,
                                         translation: np.ndarray) -> np.ndarray:
        """
        Create 4x4 transformation matrix from rotation and translation.

        Args:
            rotation: 3x3 rotation matrix or 3-element rotation vector (Rodrigues)
            translation: 3-element translation vector

        Returns:
            4x4 homogeneous transformation matrix
        """
        rotation = np.asarray(rotation, dtype=np.float64)
        if rotation.size == 3:
            rotation = Rotation.from_rotvec(rotation.reshape(3)).as_matrix()

        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = rotation
        T[:3, 3] = np.asarray(translation, dtype=np.float64).reshape(3)
        return T

    @staticmethod
    def decompose(transformation: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Decompose 4x4 transformation into rotation and translation.

        Returns:
            (rotation_matrix 3x3, translation_vector (3,))
        """
        rotation = transformation[:3, :3].copy()
        translation = transformation[:3, 3].copy()
        return rotation, translation

    @staticmethod
    def invert(transformation: np.ndarray) -> np.ndarray:
        """
        Compute inverse of a rigid 4x4 transformation.

        T^-1 = [[R^T, -R^T * t],
                [0,    1      ]]
        """
        R, t = TransformationMatrix.decompose(transformation)

        T_inv = np.eye(4, dtype=np.float64)
        T_inv[:3, :3] = R.T
        T_inv[:3, 3] = -R.T @ t
        return T_inv

    @staticmethod
    def compose(T1: np.ndarray, T2: np.ndarray) -> np.ndarray:
        """Compose two transformations (applies T2 first, then T1)."""
        return T1 @ T2

    @staticmethod
    def validate(transformation: np.ndarray,
                 tolerance: float = 1e-6) -> Tuple[bool, str]:
        """
        Validate 4x4 transformation matrix.

        Checks:
        1. Shape is 4x4
        2. Bottom row is [0, 0, 0, 1]
        3. Rotation part is orthogonal (R^T @ R = I)
        4. Determinant of rotation is ~1 (proper rotation)

        Returns:
            (is_valid, message)
        """
        if transformation.shape != (4, 4):
            return False, f"Shape is {transformation.shape}, expected (4, 4)"

        bottom_row = transformation[3, :]
        if not np.allclose(bottom_row, [0, 0, 0, 1], atol=tolerance):
            return False, f"Bottom row is {bottom_row}, expected [0, 0, 0, 1]"

        R = transformation[:3, :3]
        if not np.allclose(R.T @ R, np.eye(3), atol=tolerance):
            return False, "Rotation matrix is not orthogonal"

        det = np.linalg.det(R)
        if not np.isclose(det, 1.0, atol=tolerance):
            return False, f"Rotation determinant is {det:.6f}, expected 1.0"

        return True, "Valid transformation matrix"

    @staticmethod
    def is_identity(transformation: np.ndarray, tolerance: float = 1e-9) -> bool:
        return np.allclose(transformation, np.eye(4), rtol=0.0, atol=tolerance)

    @staticmethod
    def transform_points(points: np.ndarray,
                         transformation: np.ndarray) -> np.ndarray:
        """
        Transform Nx3 points using a 4x4 transformation matrix.

        Returns:
            New Nx3 array of transformed points
        """
        R, t = TransformationMatrix.decompose(transformation)
        return points @ R.T + t

    @staticmethod
    def transform_organized_cloud(points: np.ndarray,
                                  rotation: np.ndarray,
                                  translation: np.ndarray,
                                  scratch: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Rotate then translate an organized cloud, writing into the same memory.

        NaN cells stay NaN, so invalid points keep their sentinel and their
        grid slot.

        Args:
            points: (rows, cols, 3) or (N, 3) float array, modified in place
            rotation: 3x3 rotation matrix
            translation: 3-element translation vector
            scratch: Optional preallocated array with the same shape and dtype
                     as points (avoids a temporary per call)

        Returns:
            The scratch buffer used (reuse it on the next call)
        """
        flat = points.reshape(-1, 3)
        if scratch is None or scratch.shape != points.shape or scratch.dtype != points.dtype:
            scratch = np.empty_like(points)
        flat_scratch = scratch.reshape(-1, 3)

        R_T = np.asarray(rotation, dtype=points.dtype).T
        t = np.asarray(translation, dtype=points.dtype).reshape(3)

        np.matmul(flat, R_T, out=flat_scratch)
        np.add(flat_scratch, t, out=flat)
        return scratch
