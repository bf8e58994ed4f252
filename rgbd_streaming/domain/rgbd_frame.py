"""Raw and calibrated RGB-D frame data structures."""
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from rgbd_streaming.domain.frame_source import FrameSource
from rgbd_streaming.domain.owned_buffer import OwnedBuffer


@dataclass
class RawFrame:
    """
    One depth+color frame waiting to be calibrated.

    Attributes:
        depth: (rows, cols) uint16 depth in millimeters, 0 = invalid
        color: (rows, cols, 3|4) uint8 color image
        index: Frame index given by the caller or the driver
        source: Where the frame came from
        sequence: Submission counter assigned by the pipeline
    """
    depth: np.ndarray
    color: np.ndarray
    index: int
    source: FrameSource = FrameSource.EXTERNAL
    sequence: int = 0

    @property
    def shape(self) -> Tuple[int, int]:
        return self.depth.shape[:2]


class CalibratedFrame:
    """
    Organized point cloud built from one RawFrame.

    Every array keeps the (rows, cols) layout of the source depth grid.
    Invalid cells stay in place with NaN positions and valid == False, which
    is what grid based algorithms (integral image normals, organized meshing)
    rely on.

    Arrays:
        points:  (rows, cols, 3) float32, meters, NaN when invalid
        normals: (rows, cols, 3) float32 or None, NaN where no normal exists
        colors:  (rows, cols, 3) uint8, held by an OwnedBuffer
        valid:   (rows, cols) bool
        depth:   (rows, cols) uint16, depth actually used (after mirroring)

    Metadata:
        index, sequence, source: copied from the RawFrame
        registered: depth and color share one intrinsics matrix
        calibrated: points were computed (False for passthrough frames)
        normals_computed: normals hold values for this frame
        calibration_ms: time spent calibrating this frame
    """

    def __init__(self, rows: int, cols: int, with_normals: bool = True):
        self.points = np.full((rows, cols, 3), np.nan, dtype=np.float32)
        self.normals: Optional[np.ndarray] = (
            np.full((rows, cols, 3), np.nan, dtype=np.float32) if with_normals else None
        )
        self.valid = np.zeros((rows, cols), dtype=bool)
        self.depth = np.zeros((rows, cols), dtype=np.uint16)
        self.color_buffer: Optional[OwnedBuffer] = OwnedBuffer.own(
            np.zeros((rows, cols, 3), dtype=np.uint8)
        )

        self.index = -1
        self.sequence = 0
        self.source = FrameSource.EXTERNAL
        self.registered = True
        self.calibrated = False
        self.normals_computed = False
        self.calibration_ms = 0.0

    @classmethod
    def empty(cls) -> "CalibratedFrame":
        """Zero-sized container, grown by copy_from() on first use."""
        return cls(0, 0, with_normals=False)

    # ========================================================================
    # ACCESSORS
    # ========================================================================

    @property
    def shape(self) -> Tuple[int, int]:
        return self.valid.shape

    @property
    def colors(self) -> np.ndarray:
        if self.color_buffer is None:
            raise RuntimeError("Calibrated frame color buffer has been released")
        return self.color_buffer.array

    @property
    def num_valid(self) -> int:
        return int(np.count_nonzero(self.valid))

    def valid_points(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Compact copy of valid points and their colors.

        Only meant for export; the frame itself stays organized.

        Returns:
            Tuple of (points [N, 3], colors [N, 3])
        """
        return self.points[self.valid].copy(), self.colors[self.valid].copy()

    # ========================================================================
    # BUFFER MANAGEMENT
    # ========================================================================

    def ensure_normals(self) -> np.ndarray:
        """Allocate the normals buffer the first time it is needed."""
        if self.normals is None or self.normals.shape != self.points.shape:
            self.normals = np.full(self.points.shape, np.nan, dtype=np.float32)
        return self.normals

    def replace_color_buffer(self, buffer: OwnedBuffer):
        """Swap in a new color buffer, releasing the previous one."""
        if self.color_buffer is not None and self.color_buffer is not buffer:
            self.color_buffer.release()
        self.color_buffer = buffer

    def invalidate(self):
        """Mark every cell invalid (passthrough / degenerate frames)."""
        self.points.fill(np.nan)
        self.valid.fill(False)
        if self.normals is not None:
            self.normals.fill(np.nan)
        self.calibrated = False
        self.normals_computed = False

    def copy_from(self, other: "CalibratedFrame"):
        """
        Copy another frame into this one.

        Arrays are reused when shapes match, reallocated otherwise. The
        color buffer of this frame is always pipeline-owned after the copy.
        """
        if self.points.shape != other.points.shape:
            rows, cols = other.shape
            self.points = np.empty((rows, cols, 3), dtype=np.float32)
            self.valid = np.empty((rows, cols), dtype=bool)
            self.depth = np.empty((rows, cols), dtype=np.uint16)
            self.normals = None

        np.copyto(self.points, other.points)
        np.copyto(self.valid, other.valid)
        np.copyto(self.depth, other.depth)

        if other.normals_computed and other.normals is not None:
            np.copyto(self.ensure_normals(), other.normals)
        elif self.normals is not None:
            self.normals.fill(np.nan)

        source_colors = other.colors
        if (self.color_buffer is None or self.color_buffer.released
                or not self.color_buffer.is_owned
                or self.color_buffer.array.shape != source_colors.shape):
            self.replace_color_buffer(OwnedBuffer.own(source_colors.copy()))
        else:
            np.copyto(self.color_buffer.array, source_colors)

        self.index = other.index
        self.sequence = other.sequence
        self.source = other.source
        self.registered = other.registered
        self.calibrated = other.calibrated
        self.normals_computed = other.normals_computed
        self.calibration_ms = other.calibration_ms

    def release(self):
        """Release the color buffer (called once at teardown)."""
        if self.color_buffer is not None:
            self.color_buffer.release()

    def __repr__(self) -> str:
        return (f"CalibratedFrame(index={self.index}, shape={self.shape}, "
                f"valid={self.num_valid}, calibrated={self.calibrated}, "
                f"normals_computed={self.normals_computed})")
