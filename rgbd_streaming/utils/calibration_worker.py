"""
Background calibration thread.

Drains the raw frame mailbox, turns each RawFrame into an organized point
cloud and publishes it to the calibrated frame mailbox:

    1. mirror correction (optional)
    2. pinhole back-projection with the depth intrinsics
    3. depth -> color extrinsic alignment, in place
    4. integral image normals (optional)
    5. publish with the source frame index

A frame whose calibration raises is still published, all-invalid, with its
index and sequence.

Neither mailbox lock is held while a frame is being calibrated.
"""

import logging
import threading
import time
from typing import Optional

import numpy as np

from rgbd_streaming.config import (
    CALIBRATION_ENABLED,
    COMPUTE_NORMALS,
    DEBUG_MODE,
    INVALID_DEPTH_VALUE,
    MIRROR_DEVICE_DATA,
    MIRROR_FLIP_CODE,
    MAX_DEPTH_CHANGE_FACTOR,
    NORMAL_SMOOTHING_SIZE,
    PAUSE_ACK_TIMEOUT_S,
    WORKER_IDLE_WAIT_S,
    WORKER_JOIN_TIMEOUT_S,
)
from rgbd_streaming.domain.camera_model import CameraModel
from rgbd_streaming.domain.errors import CameraModelError
from rgbd_streaming.domain.owned_buffer import OwnedBuffer
from rgbd_streaming.domain.rgbd_frame import CalibratedFrame, RawFrame
from rgbd_streaming.domain.worker_state import WorkerState
from rgbd_streaming.utils.depth_processor import DepthBackProjector, mirror_depth, prepare_color
from rgbd_streaming.utils.frame_mailbox import CalibratedFrameMailbox, RawFrameMailbox
from rgbd_streaming.utils.normal_estimation import IntegralImageNormalEstimator
from rgbd_streaming.utils.transformation_matrix import TransformationMatrix

logger = logging.getLogger(__name__)


class CalibrationWorker:
    """
    Calibration thread between the raw and calibrated mailboxes.

    States:
        IDLE     - created, thread not started
        RUNNING  - draining the raw mailbox
        PAUSED   - thread alive and parked, no compute
        STOPPED  - thread joined (terminal)

    The switches (calibration_enabled, mirror_enabled, normals_enabled) and
    the camera model are plain attributes, read once at the start of every
    frame; a change applies from the next frame on.

    Usage:
        worker = CalibrationWorker(raw_mailbox, calibrated_mailbox, camera_model)
        worker.start()
        ...
        worker.set_pause(True)
        worker.stop()
    """

    def __init__(self,
                 raw_mailbox: RawFrameMailbox,
                 calibrated_mailbox: CalibratedFrameMailbox,
                 camera_model: Optional[CameraModel] = None,
                 calibration_enabled: bool = CALIBRATION_ENABLED,
                 mirror_enabled: bool = MIRROR_DEVICE_DATA,
                 normals_enabled: bool = COMPUTE_NORMALS,
                 flip_code: int = MIRROR_FLIP_CODE,
                 idle_wait: float = WORKER_IDLE_WAIT_S):
        """
        Initialize calibration worker.

        Args:
            raw_mailbox: Source of raw frames
            calibrated_mailbox: Destination of calibrated frames
            camera_model: Intrinsics/extrinsics used for back-projection
            calibration_enabled: Build point clouds (False = passthrough)
            mirror_enabled: Flip depth and color before back-projection
            normals_enabled: Estimate normals for every frame
            flip_code: OpenCV flip code for mirror correction
            idle_wait: Bounded wait (seconds) when idle or paused
        """
        self.raw_mailbox = raw_mailbox
        self.calibrated_mailbox = calibrated_mailbox

        self.camera_model = camera_model
        self.calibration_enabled = calibration_enabled
        self.mirror_enabled = mirror_enabled
        self.normals_enabled = normals_enabled
        self.flip_code = flip_code
        self.idle_wait = idle_wait

        # Thread control
        self._thread: Optional[threading.Thread] = None
        self._state = WorkerState.IDLE
        self._state_lock = threading.Lock()
        self._running = False
        self._paused = False
        self._wake = threading.Event()
        self._parked = threading.Event()

        # Buffers reused across frames
        self._working: Optional[CalibratedFrame] = None
        self._transform_scratch: Optional[np.ndarray] = None
        self._projector = DepthBackProjector()
        self._normal_estimator = IntegralImageNormalEstimator(
            smoothing_size=NORMAL_SMOOTHING_SIZE,
            max_depth_change_factor=MAX_DEPTH_CHANGE_FACTOR,
        )

        # Statistics
        self.frames_calibrated = 0
        self.last_calibration_ms = 0.0

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    @property
    def state(self) -> WorkerState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: WorkerState):
        with self._state_lock:
            if self._state is WorkerState.STOPPED:
                return
            if self._state is not state:
                logger.debug(f"Calibration worker {self._state} -> {state}")
            self._state = state

    @property
    def paused(self) -> bool:
        return self._paused

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the calibration thread (IDLE -> RUNNING)."""
        with self._state_lock:
            if self._state is not WorkerState.IDLE:
                raise RuntimeError(f"Cannot start calibration worker in state {self._state}")
            self._state = WorkerState.PAUSED if self._paused else WorkerState.RUNNING

        self._running = True
        self._thread = threading.Thread(
            target=self._run,
            name="RGBDCalibration-worker",
            daemon=True,
        )
        self._thread.start()
        logger.info("Calibration worker started")

    def stop(self, timeout: float = WORKER_JOIN_TIMEOUT_S) -> bool:
        """
        Stop and join the calibration thread (-> STOPPED).

        Returns:
            True if the thread finished within the timeout
        """
        self._running = False
        self._wake.set()

        joined = True
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            joined = not thread.is_alive()
            if not joined:
                logger.error(f"Calibration worker did not stop within {timeout:.1f}s")

        with self._state_lock:
            self._state = WorkerState.STOPPED

        if joined:
            self.release_buffers()
        logger.info("Calibration worker stopped")
        return joined

    def set_pause(self, pause: bool, timeout: float = PAUSE_ACK_TIMEOUT_S) -> bool:
        """
        Park or resume the worker.

        Pausing lets the frame in flight finish and be published, then waits
        (up to ``timeout``) for the thread to park.

        Returns:
            True once the requested state is reached (always True on resume)
        """
        if not pause:
            self._paused = False
            self._parked.clear()
            self._wake.set()
            if self.is_alive():
                self._set_state(WorkerState.RUNNING)
            return True

        self._paused = True
        self._wake.set()
        if not self.is_alive() or self._thread is threading.current_thread():
            return True

        parked = self._parked.wait(timeout)
        if not parked:
            logger.warning(f"Calibration worker did not park within {timeout:.1f}s")
        return parked

    def notify(self):
        """Wake the worker after a raw frame has been published."""
        self._wake.set()

    def release_buffers(self):
        """Release the working frame buffers (teardown)."""
        working = self._working
        self._working = None
        self._transform_scratch = None
        if working is not None:
            working.release()

    # ========================================================================
    # THREAD LOOP
    # ========================================================================

    def _idle(self):
        self._wake.wait(self.idle_wait)
        self._wake.clear()

    def _run(self):
        parked = False
        while self._running:
            if self._paused:
                if not parked:
                    self._set_state(WorkerState.PAUSED)
                    parked = True
                self._parked.set()
                self._idle()
                continue

            if parked:
                self._parked.clear()
                self._set_state(WorkerState.RUNNING)
                parked = False

            raw = self.raw_mailbox.try_take()
            if raw is None:
                self._idle()
                continue

            try:
                frame = self.calibrate(raw)
            except Exception:
                logger.exception(f"Calibration of frame {raw.index} failed, publishing it as invalid")
                frame = self._invalid_frame(raw)

            self._publish(frame)

        self._parked.set()

    def _publish(self, frame: CalibratedFrame):
        previous = self.calibrated_mailbox.publish(frame)
        self._working = previous
        self.frames_calibrated += 1

    # ========================================================================
    # CALIBRATION
    # ========================================================================

    def _working_frame(self, rows: int, cols: int) -> CalibratedFrame:
        frame = self._working
        if frame is None or frame.shape != (rows, cols):
            if frame is not None:
                frame.release()
            frame = CalibratedFrame(rows, cols, with_normals=self.normals_enabled)
            logger.debug(f"Allocated calibrated frame buffer {cols}x{rows}")
        self._working = frame
        return frame

    def _invalid_frame(self, raw: RawFrame) -> CalibratedFrame:
        """All-invalid frame carrying the metadata of a raw frame that failed."""
        rows, cols = raw.shape
        frame = self._working_frame(rows, cols)
        frame.invalidate()
        frame.depth.fill(INVALID_DEPTH_VALUE)
        frame.replace_color_buffer(OwnedBuffer.own(np.zeros((rows, cols, 3), dtype=np.uint8)))

        frame.index = raw.index
        frame.sequence = raw.sequence
        frame.source = raw.source
        frame.registered = True
        frame.calibration_ms = 0.0
        return frame

    def calibrate(self, raw: RawFrame) -> CalibratedFrame:
        """
        Calibrate one raw frame into the reused working buffer.

        An all-invalid depth grid still produces a frame (every cell
        invalid). The returned frame belongs to the worker until published.

        Raises:
            CameraModelError: calibration is enabled but no camera model is set
        """
        start = time.perf_counter()

        # Snapshot of the configuration for this frame
        model = self.camera_model
        calibrate = self.calibration_enabled
        mirror = self.mirror_enabled
        normals = self.normals_enabled
        flip_code = self.flip_code

        if calibrate and model is None:
            raise CameraModelError("No camera model assigned")

        rows, cols = raw.shape
        frame = self._working_frame(rows, cols)

        # 1. Mirror correction, before any pixel/ray association
        if mirror:
            mirror_depth(raw.depth, out=frame.depth, flip_code=flip_code)
        else:
            np.copyto(frame.depth, raw.depth, casting="unsafe")
        frame.replace_color_buffer(
            prepare_color(raw.color, mirror, reuse=frame.color_buffer, flip_code=flip_code)
        )

        if calibrate:
            # 2. Back-projection
            self._projector.back_project(frame.depth, model.depth, frame.points, frame.valid)

            # 3. Extrinsic alignment
            extrinsics = model.extrinsics
            if not extrinsics.is_identity():
                self._transform_scratch = TransformationMatrix.transform_organized_cloud(
                    frame.points,
                    extrinsics.rotation,
                    extrinsics.translation,
                    scratch=self._transform_scratch,
                )

            # 4. Normals
            if normals:
                self._normal_estimator.compute(frame.points, frame.valid, frame.ensure_normals())
            frame.calibrated = True
            frame.normals_computed = normals
        else:
            frame.invalidate()

        # 5. Metadata
        frame.index = raw.index
        frame.sequence = raw.sequence
        frame.source = raw.source
        frame.registered = True
        frame.calibration_ms = (time.perf_counter() - start) * 1000.0
        self.last_calibration_ms = frame.calibration_ms

        if DEBUG_MODE:
            logger.debug(
                f"Frame {raw.index} calibrated in {frame.calibration_ms:.1f}ms "
                f"({frame.num_valid}/{rows * cols} valid)"
            )
        return frame
