"""
Single-slot mailboxes between producers, the calibration worker and the consumer.

A mailbox holds at most one frame. Publishing overwrites whatever is still
unread (last-write-wins), so memory and latency stay bounded and a slow
consumer always sees the newest frame. Each mailbox owns one lock, held only
for a reference/flag swap or, on the consumer side, for the copy out of the
slot buffer.

    producer --publish--> RawFrameMailbox --try_take--> worker
    worker --publish--> CalibratedFrameMailbox --take--> consumer
"""

import logging
import threading
from typing import Optional

from rgbd_streaming.domain.rgbd_frame import CalibratedFrame, RawFrame

logger = logging.getLogger(__name__)


class RawFrameMailbox:
    """
    Holding area for the next raw frame to calibrate.

    Usage:
        mailbox = RawFrameMailbox()
        mailbox.publish(RawFrame(depth, color, index=12))

        # worker thread
        frame = mailbox.try_take()
        if frame is not None:
            ...
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._frame: Optional[RawFrame] = None
        self._published = 0

    def publish(self, frame: RawFrame) -> Optional[RawFrame]:
        """
        Make a frame pending, replacing any unread one.

        Args:
            frame: Raw frame; ownership passes to the mailbox

        Returns:
            The frame that was overwritten without being taken, or None
        """
        with self._lock:
            dropped = self._frame
            self._frame = frame
            self._published += 1

        if dropped is not None:
            logger.debug(f"Raw frame {dropped.index} overwritten by frame {frame.index}")
        return dropped

    def try_take(self) -> Optional[RawFrame]:
        """Remove and return the pending frame, or None if the slot is empty."""
        with self._lock:
            frame = self._frame
            self._frame = None
        return frame

    def is_pending(self) -> bool:
        with self._lock:
            return self._frame is not None

    def pending_index(self) -> Optional[int]:
        with self._lock:
            return None if self._frame is None else self._frame.index

    @property
    def published_count(self) -> int:
        return self._published

    def clear(self) -> Optional[RawFrame]:
        """Drop the pending frame (if any) and return it."""
        return self.try_take()


class CalibratedFrameMailbox:
    """
    Holding area for the latest calibrated frame.

    The slot is a CalibratedFrame buffer reused across frames. The worker
    publishes by swapping its working buffer with the slot buffer, so the
    critical section never depends on the frame size; the consumer copies the
    slot into its own container under the same lock.

    Usage:
        mailbox = CalibratedFrameMailbox()

        # worker thread
        working = mailbox.publish(working) or CalibratedFrame(rows, cols)

        # consumer thread
        container = CalibratedFrame.empty()
        if mailbox.take(container):
            ...
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._slot: Optional[CalibratedFrame] = None
        self._pending = False
        self._published = 0
        self._taken_sequence = 0

    def publish(self, frame: CalibratedFrame) -> Optional[CalibratedFrame]:
        """
        Publish a calibrated frame by swapping it into the slot.

        Args:
            frame: Fully written calibrated frame; the mailbox keeps it

        Returns:
            The previous slot buffer, handed back to the caller for reuse
            (None on the first publish). If it was still pending, its frame
            is lost, which is the intended last-write-wins behavior.
        """
        with self._lock:
            previous = self._slot
            dropped = self._pending
            self._slot = frame
            self._pending = True
            self._published += 1

        if dropped and previous is not None:
            logger.debug(f"Calibrated frame {previous.index} not taken before frame {frame.index}")
        return previous

    def take(self, out: CalibratedFrame) -> bool:
        """
        Copy the pending frame into a consumer-owned container.

        Args:
            out: Container to fill (arrays are reused when shapes match)

        Returns:
            True if a frame was copied, False if nothing was pending
        """
        with self._lock:
            if not self._pending or self._slot is None:
                return False
            out.copy_from(self._slot)
            self._pending = False
            self._taken_sequence = self._slot.sequence
        return True

    def is_pending(self) -> bool:
        with self._lock:
            return self._pending

    def pending_index(self) -> Optional[int]:
        with self._lock:
            if not self._pending or self._slot is None:
                return None
            return self._slot.index

    @property
    def published_count(self) -> int:
        return self._published

    @property
    def taken_sequence(self) -> int:
        """Submission sequence of the last frame handed to the consumer."""
        with self._lock:
            return self._taken_sequence

    def release(self):
        """Release the slot buffer; no frame is pending afterwards."""
        with self._lock:
            slot = self._slot
            self._slot = None
            self._pending = False
        if slot is not None:
            slot.release()
