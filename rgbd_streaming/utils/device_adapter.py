"""Capability interface between the calibration pipeline and a live RGB-D driver."""
from abc import ABC, abstractmethod
from typing import Callable, Optional

import numpy as np

from rgbd_streaming.domain.camera_model import CameraModel, DeviceDimensions

# callback(color, depth, frame_index), called on the driver's own thread
FrameCallback = Callable[[np.ndarray, np.ndarray, int], None]


class DeviceAdapter(ABC):
    """
    Narrow view of an RGB-D driver.

    The pipeline only ever talks to a device through these operations, so a
    driver can be swapped (or replaced by a test double) without touching the
    calibration code. Implementations raise DeviceError for any failure to
    connect or answer a query.
    """

    def __init__(self):
        self._frame_callback: Optional[FrameCallback] = None

    @abstractmethod
    def connect(self, device_index: int):
        """
        Open the device and start streaming.

        Frames are delivered to the callback registered with on_frame().
        """
        pass

    @abstractmethod
    def disconnect(self):
        """Stop streaming and release the device. No callback runs afterwards."""
        pass

    @abstractmethod
    def get_dimensions(self) -> DeviceDimensions:
        """Sizes of the color and depth streams of the connected device."""
        pass

    @abstractmethod
    def get_intrinsics(self) -> CameraModel:
        """Factory intrinsics/extrinsics of the connected device."""
        pass

    @abstractmethod
    def set_synchronization(self, enabled: bool):
        """Ask the driver to deliver depth registered (aligned) to color."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    def on_frame(self, callback: Optional[FrameCallback]):
        """Register (or clear, with None) the frame callback."""
        self._frame_callback = callback

    def _deliver(self, color: np.ndarray, depth: np.ndarray, frame_index: int):
        """Hand a frame to the registered callback (driver thread)."""
        callback = self._frame_callback
        if callback is not None:
            callback(color, depth, frame_index)
