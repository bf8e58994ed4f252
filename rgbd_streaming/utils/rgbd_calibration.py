"""
RGB-D calibration pipeline facade.

RGBDCalibration wires a frame producer (a live DeviceAdapter or a caller
pushing frames with submit_frame) to a background CalibrationWorker and hands
calibrated, organized point clouds to a single consumer thread.

    producer -> RawFrameMailbox -> CalibrationWorker -> CalibratedFrameMailbox -> get_frame()

Both mailboxes hold one frame at most; newer frames overwrite unread ones.
A producer that must not lose frames polls frame_processed() before
submitting the next one.
"""

import logging
import threading
from typing import Optional

import numpy as np

from rgbd_streaming.config import (
    CALIBRATION_ENABLED,
    COMPUTE_NORMALS,
    MIRROR_DEVICE_DATA,
    MIRROR_FLIP_CODE,
    WORKER_JOIN_TIMEOUT_S,
)
from rgbd_streaming.domain.camera_model import CameraModel, DeviceDimensions, Extrinsics, Intrinsics
from rgbd_streaming.domain.errors import (
    CameraModelError,
    ConsumerThreadError,
    DeviceError,
    NotConnectedError,
)
from rgbd_streaming.domain.frame_source import FrameSource
from rgbd_streaming.domain.pipeline_state import PipelineState
from rgbd_streaming.domain.rgbd_frame import CalibratedFrame, RawFrame
from rgbd_streaming.domain.worker_state import WorkerState
from rgbd_streaming.utils.calibration_worker import CalibrationWorker
from rgbd_streaming.utils.device_adapter import DeviceAdapter
from rgbd_streaming.utils.frame_mailbox import CalibratedFrameMailbox, RawFrameMailbox

logger = logging.getLogger(__name__)


class RGBDCalibration:
    """
    Consumer-facing calibration pipeline.

    Threads:
    - driver callback thread: device_callback()
    - calibration worker thread (owned by this object)
    - designated consumer thread: the thread that created the object; the
      only one allowed to call get_frame()

    Usage (live device):
        calibration = RGBDCalibration(RealSenseDeviceAdapter())
        calibration.connect_device(0)
        frame = CalibratedFrame.empty()
        while running:
            if calibration.get_frame(frame):
                process(frame.points, frame.colors, frame.valid)
        calibration.disconnect_device()

    Usage (caller-pushed frames):
        with RGBDCalibration(camera_model=model) as calibration:
            calibration.connect_offline()
            calibration.submit_frame(depth, color, index=0)
    """

    def __init__(self,
                 device_adapter: Optional[DeviceAdapter] = None,
                 camera_model: Optional[CameraModel] = None,
                 calibration_enabled: bool = CALIBRATION_ENABLED,
                 mirror_enabled: bool = MIRROR_DEVICE_DATA,
                 normals_enabled: bool = COMPUTE_NORMALS,
                 flip_code: int = MIRROR_FLIP_CODE):
        """
        Initialize calibration pipeline (not connected).

        Args:
            device_adapter: Live driver used by connect_device() (optional)
            camera_model: Camera model; when given it takes precedence over
                          the factory model reported by the device
            calibration_enabled: Accept and calibrate frames
            mirror_enabled: Undo sensor mirroring before back-projection
            normals_enabled: Estimate normals for calibrated frames
            flip_code: OpenCV flip code for mirror correction
        """
        self.device_adapter = device_adapter

        self._camera_model = camera_model
        self._model_assigned = camera_model is not None
        self._calibration_enabled = calibration_enabled
        self._mirror_enabled = mirror_enabled
        self._normals_enabled = normals_enabled
        self._flip_code = flip_code
        self._paused = False

        self._consumer_thread_id = threading.get_ident()

        self._raw_mailbox = RawFrameMailbox()
        self._calibrated_mailbox = CalibratedFrameMailbox()
        self._worker: Optional[CalibrationWorker] = None

        self._connected = False
        self._source: Optional[FrameSource] = None
        self._dimensions: Optional[DeviceDimensions] = None
        self._grid_shape: Optional[tuple] = None

        # Producer bookkeeping (submit_frame / device_callback)
        self._producer_lock = threading.Lock()
        self._sequence = 0
        self._frames_submitted = 0

    # ========================================================================
    # CONNECTION
    # ========================================================================

    @property
    def is_connected(self) -> bool:
        return self._connected

    def connect_device(self, device_index: int = 0):
        """
        Connect the live device and start calibrating its frames.

        Args:
            device_index: Index of the device for the adapter

        Raises:
            DeviceError: No adapter, already connected, or the device failed
                         to connect or to report its dimensions/intrinsics
        """
        if self.device_adapter is None:
            raise DeviceError("No device adapter configured")
        if self._connected:
            raise DeviceError("Calibration pipeline already connected")

        adapter = self.device_adapter
        adapter.on_frame(self.device_callback)
        try:
            adapter.connect(device_index)
            dimensions = adapter.get_dimensions()
            factory_model = adapter.get_intrinsics()
        except Exception as e:
            adapter.on_frame(None)
            if adapter.is_connected:
                adapter.disconnect()
            if isinstance(e, DeviceError):
                raise
            raise DeviceError(f"Failed to connect device {device_index}: {e}") from e

        if not self._model_assigned:
            self._camera_model = factory_model

        self._dimensions = dimensions
        self._grid_shape = dimensions.depth_shape
        self._start(FrameSource.DEVICE)

        rgb_w, rgb_h, depth_w, depth_h = dimensions.as_tuple()
        logger.info(
            f"Device {device_index} connected (rgb {rgb_w}x{rgb_h}, depth {depth_w}x{depth_h})"
        )

    def connect_offline(self, dimensions: Optional[DeviceDimensions] = None):
        """
        Start the pipeline for caller-pushed frames, without a device.

        Args:
            dimensions: Stream sizes; when omitted they are taken from the
                        camera model until the first submitted frame fixes
                        the grid, then reported from that frame

        Raises:
            CameraModelError: No camera model has been assigned
            DeviceError: Already connected
        """
        if self._connected:
            raise DeviceError("Calibration pipeline already connected")
        if self._camera_model is None:
            raise CameraModelError("A camera model is required before connect_offline()")

        model = self._camera_model
        if dimensions is None:
            self._dimensions = DeviceDimensions(
                model.rgb.width, model.rgb.height, model.depth.width, model.depth.height
            )
            self._grid_shape = None
        else:
            self._dimensions = dimensions
            self._grid_shape = dimensions.depth_shape

        self._start(FrameSource.EXTERNAL)
        logger.info("Calibration pipeline started for submitted frames")

    def _start(self, source: FrameSource):
        self._raw_mailbox = RawFrameMailbox()
        self._calibrated_mailbox = CalibratedFrameMailbox()
        with self._producer_lock:
            self._sequence = 0
            self._frames_submitted = 0

        self._worker = CalibrationWorker(
            self._raw_mailbox,
            self._calibrated_mailbox,
            camera_model=self._camera_model,
            calibration_enabled=self._calibration_enabled,
            mirror_enabled=self._mirror_enabled,
            normals_enabled=self._normals_enabled,
            flip_code=self._flip_code,
        )
        self._paused = False
        self._source = source
        self._connected = True
        self._worker.start()

    def disconnect_device(self, timeout: float = WORKER_JOIN_TIMEOUT_S):
        """
        Stop the device stream, then stop and join the worker.

        After this returns no calibrated frame is published anymore and all
        frame buffers are released. Calling it while disconnected is a no-op.
        """
        if not self._connected:
            logger.debug("disconnect_device() called while not connected")
            return

        # Producers see the pipeline as closed from here on
        self._connected = False

        if self._source is FrameSource.DEVICE and self.device_adapter is not None:
            self.device_adapter.on_frame(None)
            try:
                self.device_adapter.disconnect()
            except DeviceError as e:
                logger.warning(f"Error disconnecting device: {e}")

        worker = self._worker
        if worker is not None:
            worker.stop(timeout)

        self._calibrated_mailbox.release()
        self._raw_mailbox.clear()

        self._source = None
        self._dimensions = None
        self._grid_shape = None
        self._paused = False
        logger.info("Calibration pipeline disconnected")

    def __enter__(self) -> "RGBDCalibration":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect_device()
        return False

    # ========================================================================
    # PRODUCERS
    # ========================================================================

    def submit_frame(self, depth: np.ndarray, color: np.ndarray, index: int) -> bool:
        """
        Push one frame to be calibrated (synchronous producer path).

        The arrays are copied, so the caller may reuse them right away. A
        pending, not yet calibrated frame is overwritten.

        Args:
            depth: (rows, cols) integer depth in millimeters, 0 = invalid;
                   values must fit in uint16
            color: (rows, cols, 3|4) uint8 image
            index: Frame index carried through to the calibrated frame

        Returns:
            True if the frame was accepted, False if calibration is disabled

        Raises:
            NotConnectedError: Pipeline not connected
            ValueError: Bad array shape/dtype, depth outside the uint16 range,
                        or grid shape differs from the connected grid
        """
        if not self._connected:
            raise NotConnectedError("submit_frame() requires a connected pipeline")
        if not self._calibration_enabled:
            logger.warning(f"Frame {index} rejected: calibration is disabled")
            return False

        self._publish_raw(depth, color, index, FrameSource.EXTERNAL, copy=True)
        return True

    def device_callback(self, color: np.ndarray, depth: np.ndarray, index: int):
        """
        Frame callback registered with the DeviceAdapter (driver thread).

        Never raises into the driver; rejected frames are logged.
        """
        if not self._connected or not self._calibration_enabled:
            return
        try:
            self._publish_raw(depth, color, index, FrameSource.DEVICE, copy=False)
        except ValueError as e:
            logger.warning(f"Device frame {index} rejected: {e}")
        except Exception:
            logger.exception(f"Error publishing device frame {index}")

    def _publish_raw(self,
                     depth: np.ndarray,
                     color: np.ndarray,
                     index: int,
                     source: FrameSource,
                     copy: bool):
        depth = np.asarray(depth)
        color = np.asarray(color)

        if depth.ndim != 2:
            raise ValueError(f"Depth must be a 2D grid, got shape {depth.shape}")
        if not np.issubdtype(depth.dtype, np.integer):
            raise ValueError(f"Depth must hold integer millimeters, got dtype {depth.dtype}")
        if not np.can_cast(depth.dtype, np.uint16) and depth.size:
            low, high = int(depth.min()), int(depth.max())
            if low < 0 or high > np.iinfo(np.uint16).max:
                raise ValueError(f"Depth values [{low}, {high}] mm do not fit in uint16")
        if color.ndim != 3 or color.shape[2] not in (3, 4):
            raise ValueError(f"Color must be (rows, cols, 3|4), got shape {color.shape}")
        if color.dtype != np.uint8:
            raise ValueError(f"Color must be uint8, got dtype {color.dtype}")
        if color.shape[:2] != depth.shape:
            raise ValueError(
                f"Color grid {color.shape[:2]} does not match depth grid {depth.shape}"
            )

        if copy:
            depth = np.array(depth, dtype=np.uint16, order="C")
            color = np.array(color, order="C")
        else:
            depth = np.ascontiguousarray(depth, dtype=np.uint16)
            color = np.ascontiguousarray(color)

        with self._producer_lock:
            if self._grid_shape is None:
                self._grid_shape = depth.shape
                rows, cols = depth.shape
                # Color shares the depth grid for submitted frames
                self._dimensions = DeviceDimensions(cols, rows, cols, rows)
                logger.info(f"Grid fixed at {cols}x{rows} by frame {index}")
            elif depth.shape != self._grid_shape:
                raise ValueError(
                    f"Grid shape {depth.shape} differs from connected grid {self._grid_shape}"
                )

            self._sequence += 1
            self._frames_submitted += 1
            frame = RawFrame(depth=depth, color=color, index=int(index),
                             source=source, sequence=self._sequence)
            self._raw_mailbox.publish(frame)

        worker = self._worker
        if worker is not None:
            worker.notify()

    def frame_processed(self) -> bool:
        """
        Check whether the last submitted frame has been handed to the consumer.

        Non-blocking backpressure signal: submitting while this is False
        overwrites a frame nobody has seen yet. True before any submission.
        """
        with self._producer_lock:
            last_sequence = self._sequence
        return self._calibrated_mailbox.taken_sequence == last_sequence

    # ========================================================================
    # CONSUMER
    # ========================================================================

    def get_frame(self, container: CalibratedFrame) -> bool:
        """
        Copy the latest calibrated frame into ``container``.

        Never blocks beyond the mailbox copy.

        Args:
            container: Consumer-owned frame, e.g. CalibratedFrame.empty();
                       its arrays are reused when the grid size matches

        Returns:
            True if a new frame was copied, False if none was pending

        Raises:
            ConsumerThreadError: Called from a thread other than the one
                                 that created this object
        """
        if threading.get_ident() != self._consumer_thread_id:
            raise ConsumerThreadError(
                f"get_frame() must be called from thread {self._consumer_thread_id}"
            )
        if not self._connected:
            return False
        return self._calibrated_mailbox.take(container)

    # ========================================================================
    # SETTINGS
    # ========================================================================

    def set_pause(self, pause: bool) -> bool:
        """
        Pause or resume calibration.

        Pausing waits for the frame in flight to be published. Frames
        submitted while paused stay in the raw mailbox (last-write-wins).

        Returns:
            True once the worker reached the requested state

        Raises:
            NotConnectedError: Pipeline not connected
        """
        if not self._connected or self._worker is None:
            raise NotConnectedError("set_pause() requires a connected pipeline")

        acknowledged = self._worker.set_pause(pause)
        self._paused = pause
        logger.info(f"Calibration {'paused' if pause else 'resumed'}")
        return acknowledged

    def set_calibration(self, enabled: bool):
        self._calibration_enabled = enabled
        if self._worker is not None:
            self._worker.calibration_enabled = enabled
        logger.info(f"Calibration {'enabled' if enabled else 'disabled'}")

    def set_mirror(self, enabled: bool):
        self._mirror_enabled = enabled
        if self._worker is not None:
            self._worker.mirror_enabled = enabled
        logger.info(f"Mirror correction {'enabled' if enabled else 'disabled'}")

    def set_compute_normals(self, enabled: bool):
        self._normals_enabled = enabled
        if self._worker is not None:
            self._worker.normals_enabled = enabled
        logger.info(f"Normal estimation {'enabled' if enabled else 'disabled'}")

    def set_camera_model(self,
                         rgb: Intrinsics,
                         depth: Intrinsics,
                         extrinsics: Optional[Extrinsics] = None):
        """
        Assign the camera model used for back-projection and alignment.

        While connected the new model applies from the next calibrated frame;
        a frame is never calibrated with a mix of two models.

        Args:
            rgb: Color sensor intrinsics
            depth: Depth sensor intrinsics
            extrinsics: Depth -> color transform (identity when omitted)

        Raises:
            CameraModelError: Arguments are not Intrinsics/Extrinsics
        """
        if not isinstance(rgb, Intrinsics) or not isinstance(depth, Intrinsics):
            raise CameraModelError("rgb and depth must be Intrinsics")
        if extrinsics is None:
            extrinsics = Extrinsics.identity()
        elif not isinstance(extrinsics, Extrinsics):
            raise CameraModelError("extrinsics must be Extrinsics")

        model = CameraModel(rgb=rgb, depth=depth, extrinsics=extrinsics)
        self._camera_model = model
        self._model_assigned = True
        if self._worker is not None:
            self._worker.camera_model = model

        logger.info(
            f"Camera model set: depth fx={depth.fx:.2f} fy={depth.fy:.2f} "
            f"cx={depth.cx:.2f} cy={depth.cy:.2f}, "
            f"extrinsics {'identity' if extrinsics.is_identity() else 'non-identity'}"
        )

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_dimensions(self) -> DeviceDimensions:
        """
        Stream sizes of the connected pipeline.

        Raises:
            NotConnectedError: Pipeline not connected
        """
        if not self._connected or self._dimensions is None:
            raise NotConnectedError("get_dimensions() requires a connected pipeline")
        return self._dimensions

    def get_intrinsics(self) -> CameraModel:
        """
        Camera model in use (assigned, or reported by the device on connect).

        Raises:
            NotConnectedError: No model assigned and no device connected yet
        """
        if self._camera_model is None:
            raise NotConnectedError(
                "No camera model available: connect a device or call set_camera_model()"
            )
        return self._camera_model

    def state(self) -> PipelineState:
        """Return a snapshot of the pipeline state."""
        worker = self._worker
        worker_state = worker.state if worker is not None else WorkerState.IDLE
        frames_calibrated = worker.frames_calibrated if worker is not None else 0

        with self._producer_lock:
            frames_submitted = self._frames_submitted

        return PipelineState(
            calibration_enabled=self._calibration_enabled,
            mirror_enabled=self._mirror_enabled,
            normals_enabled=self._normals_enabled,
            paused=self._paused,
            worker_state=worker_state,
            raw_pending=self._raw_mailbox.is_pending(),
            raw_index=self._raw_mailbox.pending_index(),
            calibrated_pending=self._calibrated_mailbox.is_pending(),
            calibrated_index=self._calibrated_mailbox.pending_index(),
            frames_submitted=frames_submitted,
            frames_calibrated=frames_calibrated,
        )

    def __repr__(self) -> str:
        status = "connected" if self._connected else "disconnected"
        return f"RGBDCalibration({status}, source={self._source}, grid={self._grid_shape})"
