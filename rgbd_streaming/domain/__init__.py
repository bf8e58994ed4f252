"""Domain models for RGB-D frames, cameras and pipeline state."""
from rgbd_streaming.domain.camera_model import CameraModel, DeviceDimensions, Extrinsics, Intrinsics
from rgbd_streaming.domain.errors import CameraModelError, ConsumerThreadError, DeviceError, NotConnectedError
from rgbd_streaming.domain.frame_source import FrameSource
from rgbd_streaming.domain.owned_buffer import BufferOwnership, OwnedBuffer
from rgbd_streaming.domain.pipeline_state import PipelineState
from rgbd_streaming.domain.rgbd_frame import CalibratedFrame, RawFrame
from rgbd_streaming.domain.worker_state import WorkerState

__all__ = [
    "CameraModel",
    "DeviceDimensions",
    "Extrinsics",
    "Intrinsics",
    "CameraModelError",
    "ConsumerThreadError",
    "DeviceError",
    "NotConnectedError",
    "FrameSource",
    "BufferOwnership",
    "OwnedBuffer",
    "PipelineState",
    "CalibratedFrame",
    "RawFrame",
    "WorkerState",
]
