"""Shared fixtures for the calibration pipeline tests."""
import threading
import time

import numpy as np
import pytest

from rgbd_streaming.domain.camera_model import CameraModel, DeviceDimensions, Intrinsics
from rgbd_streaming.domain.errors import DeviceError
from rgbd_streaming.utils.device_adapter import DeviceAdapter

ROWS = 480
COLS = 640


class FakeDeviceAdapter(DeviceAdapter):
    """In-memory device: frames are pushed by the test with emit()."""

    def __init__(self, model: CameraModel, fail_connect: bool = False):
        super().__init__()
        self.model = model
        self.fail_connect = fail_connect
        self.synchronized = True
        self._connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0

    def connect(self, device_index: int):
        self.connect_calls += 1
        if self.fail_connect or device_index != 0:
            raise DeviceError(f"No fake device at index {device_index}")
        self._connected = True

    def disconnect(self):
        self.disconnect_calls += 1
        self._connected = False

    def get_dimensions(self) -> DeviceDimensions:
        if not self._connected:
            raise DeviceError("Fake device not connected")
        rgb, depth = self.model.rgb, self.model.depth
        return DeviceDimensions(rgb.width, rgb.height, depth.width, depth.height)

    def get_intrinsics(self) -> CameraModel:
        if not self._connected:
            raise DeviceError("Fake device not connected")
        return self.model

    def set_synchronization(self, enabled: bool):
        self.synchronized = enabled

    @property
    def is_connected(self) -> bool:
        return self._connected

    def emit(self, color: np.ndarray, depth: np.ndarray, index: int):
        """Deliver a frame from a separate "driver" thread and wait for it."""
        thread = threading.Thread(target=self._deliver, args=(color, depth, index))
        thread.start()
        thread.join()


def wait_until(predicate, timeout: float = 3.0, interval: float = 0.002) -> bool:
    """Poll predicate until it is true or the deadline passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def intrinsics():
    return Intrinsics(fx=525.0, fy=525.0, cx=319.5, cy=239.5, width=COLS, height=ROWS)


@pytest.fixture
def camera_model(intrinsics):
    return CameraModel.registered(intrinsics)


@pytest.fixture
def small_intrinsics():
    return Intrinsics(fx=50.0, fy=50.0, cx=15.5, cy=11.5, width=32, height=24)


@pytest.fixture
def small_model(small_intrinsics):
    return CameraModel.registered(small_intrinsics)


@pytest.fixture
def flat_depth():
    return np.full((ROWS, COLS), 1000, dtype=np.uint16)


@pytest.fixture
def gradient_color():
    color = np.zeros((ROWS, COLS, 3), dtype=np.uint8)
    color[..., 0] = np.arange(COLS, dtype=np.uint16)[np.newaxis, :] % 256
    color[..., 1] = np.arange(ROWS, dtype=np.uint16)[:, np.newaxis] % 256
    color[..., 2] = 7
    return color


@pytest.fixture
def fake_device(camera_model):
    return FakeDeviceAdapter(camera_model)
