"""
Point cloud export for calibrated frames.

Calibrated frames are organized grids; exporters compact them to the valid
points only (N x 3) and hand them to Open3D. The organized grid itself can be
kept with save_organized_npz().
"""

import logging
from pathlib import Path
from typing import Union

import numpy as np

from rgbd_streaming.domain.rgbd_frame import CalibratedFrame

try:
    import open3d as o3d
    OPEN3D_AVAILABLE = True
except ImportError:
    OPEN3D_AVAILABLE = False

logger = logging.getLogger(__name__)


def _require_open3d():
    if not OPEN3D_AVAILABLE:
        raise ImportError("open3d is required for point cloud export (pip install open3d)")


def to_open3d(frame: CalibratedFrame):
    """
    Convert the valid points of a calibrated frame to an Open3D point cloud.

    Colors are scaled to [0, 1]; normals are attached when the frame has
    them (points without a normal get a zero vector).

    Args:
        frame: Calibrated frame (calibrated == True)

    Returns:
        open3d.geometry.PointCloud

    Raises:
        ImportError: open3d is not installed
        ValueError: Frame holds no point cloud (passthrough frame)
    """
    _require_open3d()
    if not frame.calibrated:
        raise ValueError(f"Frame {frame.index} holds no point cloud (calibration was disabled)")

    points, colors = frame.valid_points()

    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(points.astype(np.float64))
    pcd.colors = o3d.utility.Vector3dVector(colors.astype(np.float64) / 255.0)

    if frame.normals_computed and frame.normals is not None:
        normals = np.nan_to_num(frame.normals[frame.valid].astype(np.float64))
        pcd.normals = o3d.utility.Vector3dVector(normals)

    return pcd


def save_point_cloud(frame: CalibratedFrame,
                     output_path: Union[str, Path],
                     write_ascii: bool = False) -> Path:
    """
    Save the valid points of a calibrated frame (.ply, .pcd, .xyz, ...).

    Args:
        frame: Calibrated frame
        output_path: Destination file; the format follows the extension
        write_ascii: Write ASCII instead of binary where the format allows it

    Returns:
        Path of the written file

    Raises:
        ImportError: open3d is not installed
        IOError: Open3D failed to write the file
    """
    output_path = Path(output_path)
    pcd = to_open3d(frame)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    if not o3d.io.write_point_cloud(str(output_path), pcd, write_ascii=write_ascii):
        raise IOError(f"Failed to write point cloud to {output_path}")

    logger.info(f"Saved frame {frame.index} ({len(pcd.points)} points) to {output_path}")
    return output_path


def save_organized_npz(frame: CalibratedFrame, output_path: Union[str, Path]) -> Path:
    """
    Save the full organized grid (points, colors, valid, depth, normals).

    Returns:
        Path of the written .npz file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    arrays = {
        "points": frame.points,
        "colors": frame.colors,
        "valid": frame.valid,
        "depth": frame.depth,
        "frame_number": np.int64(frame.index),
    }
    if frame.normals_computed and frame.normals is not None:
        arrays["normals"] = frame.normals

    np.savez_compressed(output_path, **arrays)
    logger.info(f"Saved organized frame {frame.index} to {output_path}")
    return output_path
