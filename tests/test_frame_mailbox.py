import threading

import numpy as np

from rgbd_streaming.domain.rgbd_frame import CalibratedFrame, RawFrame
from rgbd_streaming.utils.frame_mailbox import CalibratedFrameMailbox, RawFrameMailbox


def _raw(index, rows=4, cols=6):
    depth = np.full((rows, cols), 1000 + index, dtype=np.uint16)
    color = np.zeros((rows, cols, 3), dtype=np.uint8)
    return RawFrame(depth=depth, color=color, index=index, sequence=index)


def _calibrated(index, rows=4, cols=6):
    frame = CalibratedFrame(rows, cols)
    frame.index = index
    frame.sequence = index
    frame.points[...] = index
    frame.valid[...] = True
    frame.calibrated = True
    return frame


class TestRawFrameMailbox:

    def test_empty_mailbox(self):
        mailbox = RawFrameMailbox()
        assert mailbox.try_take() is None
        assert not mailbox.is_pending()
        assert mailbox.pending_index() is None

    def test_publish_then_take(self):
        mailbox = RawFrameMailbox()
        frame = _raw(3)
        assert mailbox.publish(frame) is None
        assert mailbox.is_pending()
        assert mailbox.pending_index() == 3

        assert mailbox.try_take() is frame
        assert not mailbox.is_pending()
        assert mailbox.try_take() is None

    def test_last_write_wins(self):
        mailbox = RawFrameMailbox()
        first = _raw(1)
        second = _raw(2)
        mailbox.publish(first)
        dropped = mailbox.publish(second)

        assert dropped is first
        assert mailbox.try_take() is second
        assert mailbox.published_count == 2

    def test_clear(self):
        mailbox = RawFrameMailbox()
        mailbox.publish(_raw(5))
        cleared = mailbox.clear()
        assert cleared.index == 5
        assert not mailbox.is_pending()

    def test_at_most_one_pending_under_concurrent_publishers(self):
        mailbox = RawFrameMailbox()
        taken = []

        def produce(offset):
            for i in range(200):
                mailbox.publish(_raw(offset + i, rows=2, cols=2))

        producers = [threading.Thread(target=produce, args=(k * 1000,)) for k in range(3)]
        for thread in producers:
            thread.start()
        for _ in range(300):
            frame = mailbox.try_take()
            if frame is not None:
                taken.append(frame.index)
        for thread in producers:
            thread.join()

        leftover = mailbox.try_take()
        assert mailbox.try_take() is None
        # Every frame comes out at most once
        indices = taken + ([leftover.index] if leftover is not None else [])
        assert len(indices) == len(set(indices))


class TestCalibratedFrameMailbox:

    def test_take_without_publish(self):
        mailbox = CalibratedFrameMailbox()
        out = CalibratedFrame.empty()
        assert not mailbox.take(out)
        assert mailbox.taken_sequence == 0

    def test_publish_returns_previous_slot(self):
        mailbox = CalibratedFrameMailbox()
        first = _calibrated(1)
        second = _calibrated(2)

        assert mailbox.publish(first) is None
        assert mailbox.publish(second) is first
        assert mailbox.pending_index() == 2

    def test_take_copies_and_clears_pending(self):
        mailbox = CalibratedFrameMailbox()
        mailbox.publish(_calibrated(7))

        out = CalibratedFrame.empty()
        assert mailbox.take(out)
        assert out.index == 7
        assert out.shape == (4, 6)
        np.testing.assert_array_equal(out.points, 7.0)
        assert out.calibrated

        assert not mailbox.is_pending()
        assert mailbox.taken_sequence == 7
        assert not mailbox.take(out)

    def test_taken_frame_is_independent_of_slot(self):
        mailbox = CalibratedFrameMailbox()
        slot = _calibrated(1)
        mailbox.publish(slot)

        out = CalibratedFrame.empty()
        mailbox.take(out)
        slot.points[...] = -1.0
        np.testing.assert_array_equal(out.points, 1.0)

    def test_unread_frame_is_overwritten(self):
        mailbox = CalibratedFrameMailbox()
        mailbox.publish(_calibrated(1))
        mailbox.publish(_calibrated(2))

        out = CalibratedFrame.empty()
        assert mailbox.take(out)
        assert out.index == 2
        assert not mailbox.take(out)

    def test_release(self):
        mailbox = CalibratedFrameMailbox()
        frame = _calibrated(1)
        mailbox.publish(frame)
        mailbox.release()

        assert not mailbox.is_pending()
        assert frame.color_buffer.released
        assert not mailbox.take(CalibratedFrame.empty())
