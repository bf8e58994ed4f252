"""Calibration worker lifecycle states."""
from enum import Enum


class WorkerState(Enum):
    """
    States of the calibration worker thread.

    IDLE -> RUNNING <-> PAUSED -> STOPPED
    """
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"

    def __str__(self) -> str:
        return self.value

    @property
    def is_alive(self) -> bool:
        """Check if the worker thread exists and has not been stopped."""
        return self in (WorkerState.RUNNING, WorkerState.PAUSED)
