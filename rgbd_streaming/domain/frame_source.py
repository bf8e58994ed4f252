"""Frame source enumeration."""
from enum import Enum


class FrameSource(Enum):
    """
    Origin of a raw RGB-D frame.

    DEVICE frames come from the driver callback thread, EXTERNAL frames are
    pushed by a caller through submit_frame().
    """
    DEVICE = "device"
    EXTERNAL = "external"

    def __str__(self) -> str:
        return self.value
