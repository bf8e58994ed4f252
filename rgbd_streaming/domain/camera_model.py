"""Camera intrinsics/extrinsics data structures."""
from dataclasses import dataclass, field
from typing import Tuple

import numpy as np
from scipy.spatial.transform import Rotation

from rgbd_streaming.config import IDENTITY_TOLERANCE
from rgbd_streaming.domain.errors import CameraModelError

# Coefficient counts accepted by cv2.undistortPoints
_DISTORTION_LENGTHS = (0, 4, 5, 8, 12, 14)


@dataclass(frozen=True)
class Intrinsics:
    """
    Pinhole intrinsics of a single sensor.

    Attributes:
        fx: Focal length along x (pixels)
        fy: Focal length along y (pixels)
        cx: Principal point x (pixels)
        cy: Principal point y (pixels)
        width: Image width (pixels)
        height: Image height (pixels)
        coeffs: Lens distortion coefficients in OpenCV order
                (k1, k2, p1, p2[, k3[, k4, k5, k6]]); empty or all zero
                for an ideal pinhole
    """
    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int
    coeffs: Tuple[float, ...] = ()

    def __post_init__(self):
        if not (self.fx > 0 and self.fy > 0):
            raise CameraModelError(f"Focal lengths must be > 0, got fx={self.fx}, fy={self.fy}")
        if not (self.width > 0 and self.height > 0):
            raise CameraModelError(f"Image size must be > 0, got {self.width}x{self.height}")

        coeffs = tuple(float(c) for c in np.asarray(self.coeffs, dtype=np.float64).reshape(-1))
        if len(coeffs) not in _DISTORTION_LENGTHS:
            raise CameraModelError(
                f"Distortion needs one of {_DISTORTION_LENGTHS} coefficients, got {len(coeffs)}"
            )
        object.__setattr__(self, "coeffs", coeffs)

    @property
    def shape(self) -> Tuple[int, int]:
        """Grid shape as (rows, cols)."""
        return (self.height, self.width)

    @property
    def has_distortion(self) -> bool:
        return any(c != 0.0 for c in self.coeffs)

    def distortion_array(self) -> np.ndarray:
        """Distortion coefficients as a float64 array (empty for a pinhole)."""
        return np.asarray(self.coeffs, dtype=np.float64)

    def as_matrix(self) -> np.ndarray:
        """Return the 3x3 camera matrix K."""
        return np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0],
        ], dtype=np.float64)

    def to_dict(self) -> dict:
        return {
            "fx": self.fx,
            "fy": self.fy,
            "cx": self.cx,
            "cy": self.cy,
            "width": self.width,
            "height": self.height,
            "coeffs": list(self.coeffs),
        }


def _identity_rotation() -> np.ndarray:
    return np.eye(3, dtype=np.float64)


def _zero_translation() -> np.ndarray:
    return np.zeros(3, dtype=np.float64)


@dataclass(frozen=True, eq=False)
class Extrinsics:
    """
    Rigid transform from depth-sensor coordinates to color-sensor coordinates.

    p_color = rotation @ p_depth + translation (meters)
    """
    rotation: np.ndarray = field(default_factory=_identity_rotation)
    translation: np.ndarray = field(default_factory=_zero_translation)

    def __post_init__(self):
        rotation = np.asarray(self.rotation, dtype=np.float64)
        translation = np.asarray(self.translation, dtype=np.float64).reshape(-1)

        if rotation.shape != (3, 3):
            raise CameraModelError(f"Rotation must be 3x3, got shape {rotation.shape}")
        if translation.shape != (3,):
            raise CameraModelError(f"Translation must have 3 elements, got shape {translation.shape}")
        if not np.allclose(rotation.T @ rotation, np.eye(3), atol=1e-6):
            raise CameraModelError("Rotation is not orthonormal")
        if abs(np.linalg.det(rotation) - 1.0) > 1e-6:
            raise CameraModelError("Rotation determinant must be +1")

        # Read-only copies so the model really is immutable
        rotation = rotation.copy()
        translation = translation.copy()
        rotation.setflags(write=False)
        translation.setflags(write=False)
        object.__setattr__(self, "rotation", rotation)
        object.__setattr__(self, "translation", translation)

    @classmethod
    def identity(cls) -> "Extrinsics":
        return cls()

    @classmethod
    def from_rotvec(cls, rotvec, translation) -> "Extrinsics":
        """Build from a rotation vector (Rodrigues, radians) and a translation."""
        rotation = Rotation.from_rotvec(np.asarray(rotvec, dtype=np.float64)).as_matrix()
        return cls(rotation=rotation, translation=translation)

    @classmethod
    def from_euler(cls, seq: str, angles, translation, degrees: bool = False) -> "Extrinsics":
        """Build from Euler angles (scipy convention) and a translation."""
        rotation = Rotation.from_euler(seq, angles, degrees=degrees).as_matrix()
        return cls(rotation=rotation, translation=translation)

    def as_matrix(self) -> np.ndarray:
        """Return the 4x4 homogeneous transformation matrix."""
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation
        return T

    def inverse(self) -> "Extrinsics":
        """Return the transform from color-sensor to depth-sensor coordinates."""
        R_inv = self.rotation.T
        return Extrinsics(rotation=R_inv, translation=-R_inv @ self.translation)

    def is_identity(self, tolerance: float = IDENTITY_TOLERANCE) -> bool:
        return (np.allclose(self.rotation, np.eye(3), rtol=0.0, atol=tolerance)
                and np.allclose(self.translation, 0.0, rtol=0.0, atol=tolerance))

    def __eq__(self, other) -> bool:
        if not isinstance(other, Extrinsics):
            return NotImplemented
        return (np.array_equal(self.rotation, other.rotation)
                and np.array_equal(self.translation, other.translation))

    def __hash__(self) -> int:
        return hash((self.rotation.tobytes(), self.translation.tobytes()))

    def to_dict(self) -> dict:
        return {
            "rotation": self.rotation.tolist(),
            "translation": self.translation.tolist(),
        }


@dataclass(frozen=True)
class CameraModel:
    """
    Complete geometric description of an RGB-D device.

    Attributes:
        rgb: Color sensor intrinsics
        depth: Depth sensor intrinsics (used for back-projection)
        extrinsics: Depth -> color rigid transform
    """
    rgb: Intrinsics
    depth: Intrinsics
    extrinsics: Extrinsics = field(default_factory=Extrinsics.identity)

    @classmethod
    def registered(cls, intrinsics: Intrinsics) -> "CameraModel":
        """
        Model for a device whose depth map is already registered to color.

        A single intrinsics matrix serves both sensors and no extrinsic
        alignment is needed.
        """
        return cls(rgb=intrinsics, depth=intrinsics, extrinsics=Extrinsics.identity())

    def to_dict(self) -> dict:
        return {
            "rgb": self.rgb.to_dict(),
            "depth": self.depth.to_dict(),
            "extrinsics": self.extrinsics.to_dict(),
        }


@dataclass(frozen=True)
class DeviceDimensions:
    """Stream sizes reported by a device."""
    rgb_width: int
    rgb_height: int
    depth_width: int
    depth_height: int

    @property
    def depth_shape(self) -> Tuple[int, int]:
        return (self.depth_height, self.depth_width)

    @property
    def rgb_shape(self) -> Tuple[int, int]:
        return (self.rgb_height, self.rgb_width)

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return (self.rgb_width, self.rgb_height, self.depth_width, self.depth_height)


def intrinsics_from_matrix(K: np.ndarray, width: int, height: int, dist_coeffs=None) -> Intrinsics:
    """Build Intrinsics from a 3x3 camera matrix and optional distortion coefficients."""
    K = np.asarray(K, dtype=np.float64)
    if K.shape != (3, 3):
        raise CameraModelError(f"Camera matrix must be 3x3, got shape {K.shape}")
    return Intrinsics(
        fx=float(K[0, 0]),
        fy=float(K[1, 1]),
        cx=float(K[0, 2]),
        cy=float(K[1, 2]),
        width=int(width),
        height=int(height),
        coeffs=() if dist_coeffs is None else dist_coeffs,
    )

