"""Snapshot of the calibration pipeline state."""
from dataclasses import dataclass
from typing import Optional

from rgbd_streaming.domain.worker_state import WorkerState


@dataclass(frozen=True)
class PipelineState:
    """
    Point-in-time view of RGBDCalibration.

    Attributes:
        calibration_enabled: Frames are back-projected into point clouds
        mirror_enabled: Depth/color grids are flipped before calibration
        normals_enabled: Normals are estimated for each calibrated frame
        paused: Worker is parked (alive, not draining)
        worker_state: Lifecycle state of the calibration worker
        raw_pending: A raw frame waits in the raw mailbox
        raw_index: Index of the pending raw frame (None if empty)
        calibrated_pending: A calibrated frame waits in the output mailbox
        calibrated_index: Index of the pending calibrated frame (None if empty)
        frames_submitted: Raw frames accepted since connection
        frames_calibrated: Calibrated frames published since connection
    """
    calibration_enabled: bool
    mirror_enabled: bool
    normals_enabled: bool
    paused: bool
    worker_state: WorkerState
    raw_pending: bool
    raw_index: Optional[int]
    calibrated_pending: bool
    calibrated_index: Optional[int]
    frames_submitted: int = 0
    frames_calibrated: int = 0

    @property
    def running(self) -> bool:
        """Check if the worker thread is alive."""
        return self.worker_state.is_alive
