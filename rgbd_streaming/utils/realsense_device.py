"""Intel RealSense implementation of the DeviceAdapter interface."""
import logging
import threading

import numpy as np

from rgbd_streaming.config import DEPTH_SCALE, FPS, REALSENSE_HEIGHT, REALSENSE_WIDTH
from rgbd_streaming.domain.camera_model import CameraModel, DeviceDimensions, Extrinsics, Intrinsics
from rgbd_streaming.domain.errors import DeviceError
from rgbd_streaming.utils.device_adapter import DeviceAdapter

logger = logging.getLogger(__name__)


def _import_realsense():
    try:
        import pyrealsense2 as rs
    except ImportError as e:
        raise DeviceError("pyrealsense2 is required for RealSenseDeviceAdapter") from e
    return rs


class RealSenseDeviceAdapter(DeviceAdapter):
    """
    RealSense D4xx driver adapter.

    Streams depth (z16, millimeters) and color (rgb8). With synchronization
    enabled, depth is aligned to the color stream by librealsense, so both
    grids share the color intrinsics and no extrinsic alignment is needed.

    Frames arrive on the librealsense callback thread and are copied into
    numpy arrays before being handed to the registered callback, so the
    driver can recycle its frame memory immediately.

    Usage:
        adapter = RealSenseDeviceAdapter(width=640, height=480, fps=30)
        adapter.on_frame(lambda color, depth, index: ...)
        adapter.connect(0)
        ...
        adapter.disconnect()
    """

    def __init__(self,
                 width: int = REALSENSE_WIDTH,
                 height: int = REALSENSE_HEIGHT,
                 fps: int = FPS,
                 synchronize: bool = True):
        """
        Initialize RealSense adapter.

        Args:
            width: Stream width (1280, 848, 640, ...)
            height: Stream height (720, 480, 360, ...)
            fps: Target frame rate (15, 30, 60 or 90)
            synchronize: Align depth to color
        """
        super().__init__()
        self.width = width
        self.height = height
        self.fps = fps

        self._synchronize = synchronize
        self._lock = threading.Lock()
        self._pipeline = None
        self._profile = None
        self._align = None

    # ========================================================================
    # CONNECTION
    # ========================================================================

    def connect(self, device_index: int):
        rs = _import_realsense()

        if self.is_connected:
            raise DeviceError("RealSense device already connected")

        ctx = rs.context()
        devices = ctx.query_devices()
        if device_index < 0 or device_index >= len(devices):
            raise DeviceError(f"No RealSense device at index {device_index} ({len(devices)} connected)")

        device = devices[device_index]
        serial = device.get_info(rs.camera_info.serial_number)
        name = device.get_info(rs.camera_info.name)

        config = rs.config()
        config.enable_device(serial)
        config.enable_stream(rs.stream.color, self.width, self.height, rs.format.rgb8, self.fps)
        config.enable_stream(rs.stream.depth, self.width, self.height, rs.format.z16, self.fps)

        pipeline = rs.pipeline(ctx)
        self.set_synchronization(self._synchronize)

        try:
            profile = pipeline.start(config, self._on_realsense_frame)
        except RuntimeError as e:
            raise DeviceError(
                f"Could not start {name} ({serial}) at {self.width}x{self.height}@{self.fps}: {e}"
            ) from e

        with self._lock:
            self._pipeline = pipeline
            self._profile = profile

        depth_scale = profile.get_device().first_depth_sensor().get_depth_scale()
        if not np.isclose(depth_scale, DEPTH_SCALE):
            logger.warning(f"Depth scale is {depth_scale}, pipeline assumes {DEPTH_SCALE}")

        logger.info(f"Connected to {name} ({serial}) at {self.width}x{self.height}@{self.fps}")

    def disconnect(self):
        with self._lock:
            pipeline = self._pipeline
            self._pipeline = None
            self._profile = None

        if pipeline is None:
            return

        try:
            pipeline.stop()
        except RuntimeError as e:
            logger.warning(f"Error stopping RealSense pipeline: {e}")
        logger.info("RealSense device disconnected")

    @property
    def is_connected(self) -> bool:
        return self._pipeline is not None

    def set_synchronization(self, enabled: bool):
        self._synchronize = enabled
        if enabled:
            rs = _import_realsense()
            self._align = rs.align(rs.stream.color)
        else:
            self._align = None

    # ========================================================================
    # QUERIES
    # ========================================================================

    def _stream_profile(self, stream_name: str):
        rs = _import_realsense()
        profile = self._profile
        if profile is None:
            raise DeviceError("RealSense device not connected")
        stream = getattr(rs.stream, stream_name)
        return profile.get_stream(stream).as_video_stream_profile()

    def get_dimensions(self) -> DeviceDimensions:
        color = self._stream_profile("color")
        depth = self._stream_profile("depth")

        if self._synchronize:
            # Aligned depth is delivered on the color grid
            return DeviceDimensions(color.width(), color.height(), color.width(), color.height())
        return DeviceDimensions(color.width(), color.height(), depth.width(), depth.height())

    def get_intrinsics(self) -> CameraModel:
        color_profile = self._stream_profile("color")
        depth_profile = self._stream_profile("depth")

        rgb = self._to_intrinsics(color_profile.get_intrinsics())
        if self._synchronize:
            return CameraModel.registered(rgb)

        depth = self._to_intrinsics(depth_profile.get_intrinsics())
        extr = depth_profile.get_extrinsics_to(color_profile)
        # librealsense stores the rotation column-major
        rotation = np.asarray(extr.rotation, dtype=np.float64).reshape(3, 3).T
        return CameraModel(
            rgb=rgb,
            depth=depth,
            extrinsics=Extrinsics(rotation=rotation, translation=extr.translation),
        )

    @staticmethod
    def _to_intrinsics(intr) -> Intrinsics:
        rs = _import_realsense()
        coeffs = ()
        if intr.model in (rs.distortion.brown_conrady, rs.distortion.modified_brown_conrady):
            # Same k1, k2, p1, p2, k3 order as OpenCV
            coeffs = tuple(float(c) for c in intr.coeffs[:5])
        elif intr.model != rs.distortion.none and any(intr.coeffs):
            logger.warning(f"Distortion model {intr.model} not supported, using a pinhole model")

        return Intrinsics(
            fx=float(intr.fx),
            fy=float(intr.fy),
            cx=float(intr.ppx),
            cy=float(intr.ppy),
            width=int(intr.width),
            height=int(intr.height),
            coeffs=coeffs,
        )

    # ========================================================================
    # FRAME DELIVERY (librealsense thread)
    # ========================================================================

    def _on_realsense_frame(self, frame):
        try:
            if not frame.is_frameset():
                return
            frames = frame.as_frameset()

            align = self._align
            if align is not None:
                frames = align.process(frames)

            color_frame = frames.get_color_frame()
            depth_frame = frames.get_depth_frame()
            if not color_frame or not depth_frame:
                return

            color = np.asanyarray(color_frame.get_data()).copy()
            depth = np.asanyarray(depth_frame.get_data()).copy()
            self._deliver(color, depth, int(frames.get_frame_number()))

        except Exception:
            # An exception here would be swallowed by librealsense
            logger.exception("Error handling RealSense frame")

    def __repr__(self) -> str:
        state = "connected" if self.is_connected else "disconnected"
        return f"RealSenseDeviceAdapter({self.width}x{self.height}@{self.fps}, {state})"
