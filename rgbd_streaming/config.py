DEBUG_MODE          = False
DEPTH_SCALE         = 0.001             # depth units (mm) -> meters
INVALID_DEPTH_VALUE = 0                 # raw depth value marking "no measurement"
FPS                 = 30                # objetivo de FPS del dispositivo
REALSENSE_WIDTH     = 640               # depth aligned to color, same size for both
REALSENSE_HEIGHT    = 480

# ==============================================================================
# CALIBRATION PIPELINE DEFAULTS
# ==============================================================================
#
# Default values for the switches of RGBDCalibration. All of them can be
# changed at runtime through the set_* methods of the facade.
#
#   CALIBRATION_ENABLED:
#       True:  frames are back-projected into organized point clouds
#       False: submit_frame() is a no-op
#
#   MIRROR_DEVICE_DATA:
#       Some devices deliver mirrored depth and color images. When True the
#       worker flips both grids before back-projection.
#
#   MIRROR_FLIP_CODE:
#       OpenCV flip code used for the mirror correction.
#         1 = horizontal (columns reversed)   <- Kinect / PrimeSense quirk
#         0 = vertical (rows reversed)
#        -1 = both axes
#
#   COMPUTE_NORMALS:
#       Estimate per-point normals with the integral image method.
#
# ==============================================================================

CALIBRATION_ENABLED = True
MIRROR_DEVICE_DATA  = False
MIRROR_FLIP_CODE    = 1
COMPUTE_NORMALS     = True

# ==============================================================================
# NORMAL ESTIMATION
# ==============================================================================
#
# NORMAL_SMOOTHING_SIZE:
#     Half size (pixels) of the averaging window on each side of a point.
#     Larger windows give smoother normals and lose detail at edges.
#
# MAX_DEPTH_CHANGE_FACTOR:
#     A point whose immediate neighbours differ in depth by more than
#     MAX_DEPTH_CHANGE_FACTOR * z (meters) sits on a depth discontinuity and
#     gets no normal.
#
# ==============================================================================

NORMAL_SMOOTHING_SIZE   = 5
MAX_DEPTH_CHANGE_FACTOR = 0.02

# ==============================================================================
# WORKER THREAD TIMING
# ==============================================================================
#
# WORKER_IDLE_WAIT_S:    bounded wait when there is nothing to calibrate or the
#                        worker is paused (no busy loop)
# PAUSE_ACK_TIMEOUT_S:   how long set_pause(True) waits for the in-flight frame
#                        to finish before returning
# WORKER_JOIN_TIMEOUT_S: upper bound for joining the worker on disconnect
#
# ==============================================================================

WORKER_IDLE_WAIT_S    = 0.005
PAUSE_ACK_TIMEOUT_S   = 2.0
WORKER_JOIN_TIMEOUT_S = 5.0

# Tolerance used to decide that an extrinsic transform is the identity
IDENTITY_TOLERANCE = 1e-9
