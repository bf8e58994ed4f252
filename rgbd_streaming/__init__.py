"""Streaming RGB-D calibration into organized point clouds."""
from rgbd_streaming.domain import (
    CalibratedFrame,
    CameraModel,
    CameraModelError,
    ConsumerThreadError,
    DeviceDimensions,
    DeviceError,
    Extrinsics,
    Intrinsics,
    NotConnectedError,
    PipelineState,
    WorkerState,
)
from rgbd_streaming.utils.device_adapter import DeviceAdapter
from rgbd_streaming.utils.rgbd_calibration import RGBDCalibration

__version__ = "0.1.0"

__all__ = [
    "RGBDCalibration",
    "DeviceAdapter",
    "CalibratedFrame",
    "CameraModel",
    "DeviceDimensions",
    "Extrinsics",
    "Intrinsics",
    "PipelineState",
    "WorkerState",
    "CameraModelError",
    "ConsumerThreadError",
    "DeviceError",
    "NotConnectedError",
]
