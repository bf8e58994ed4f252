"""Error kinds raised by the calibration pipeline."""


class DeviceError(RuntimeError):
    """Device connection or query failed (no device, unsupported mode)."""


class NotConnectedError(RuntimeError):
    """Operation needs a connected (or offline-started) pipeline."""


class CameraModelError(ValueError):
    """Invalid or missing camera intrinsics/extrinsics."""


class ConsumerThreadError(RuntimeError):
    """get_frame() called from a thread other than the designated one."""
