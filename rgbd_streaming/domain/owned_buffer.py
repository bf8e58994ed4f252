"""Color buffer with an explicit ownership tag."""
import logging
from enum import Enum
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)


class BufferOwnership(Enum):
    """
    Who owns the memory behind an OwnedBuffer.

    OWNED buffers were allocated by the pipeline (e.g. a channel conversion or
    a mirrored copy). BORROWED buffers are views of the caller's / driver's
    array and must never be written to.
    """
    OWNED = "owned"
    BORROWED = "borrowed"

    def __str__(self) -> str:
        return self.value


class OwnedBuffer:
    """
    Array holder released exactly once.

    Usage:
        buffer = OwnedBuffer.borrow(color)
        ...
        buffer.release()

    or as a context manager:
        with OwnedBuffer.own(np.empty_like(color)) as buffer:
            buffer.array[...] = ...
    """

    def __init__(self, array: np.ndarray, ownership: BufferOwnership):
        self._array: Optional[np.ndarray] = array
        self.ownership = ownership
        self.release_count = 0

    @classmethod
    def own(cls, array: np.ndarray) -> "OwnedBuffer":
        return cls(array, BufferOwnership.OWNED)

    @classmethod
    def borrow(cls, array: np.ndarray) -> "OwnedBuffer":
        view = array.view()
        view.setflags(write=False)
        return cls(view, BufferOwnership.BORROWED)

    @property
    def array(self) -> np.ndarray:
        if self._array is None:
            raise RuntimeError("Buffer already released")
        return self._array

    @property
    def released(self) -> bool:
        return self._array is None

    @property
    def is_owned(self) -> bool:
        return self.ownership is BufferOwnership.OWNED

    def release(self) -> bool:
        """
        Drop the reference to the underlying memory.

        Returns:
            True if this call released the buffer, False if it was already
            released.
        """
        if self._array is None:
            return False

        if self.is_owned:
            logger.debug(f"Releasing pipeline-owned buffer {self._array.shape}")
        self._array = None
        self.release_count += 1
        return True

    def __enter__(self) -> "OwnedBuffer":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def __repr__(self) -> str:
        shape = None if self._array is None else self._array.shape
        return f"OwnedBuffer(ownership={self.ownership}, shape={shape}, released={self.released})"
