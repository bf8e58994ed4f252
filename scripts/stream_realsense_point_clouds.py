#!/usr/bin/env python3
"""
Live RealSense Point Cloud Streaming

Streams a RealSense camera through the calibration pipeline and reports
calibrated frames as they arrive. Optionally saves every Nth frame as a
point cloud (.ply via Open3D) or as an organized grid (.npz).

Usage:
    python scripts/stream_realsense_point_clouds.py --frames 300
    python scripts/stream_realsense_point_clouds.py --save-every 30 --output ./clouds --format ply
    python scripts/stream_realsense_point_clouds.py --mirror --no-normals
"""

import argparse
import logging
import time
from pathlib import Path

from rgbd_streaming.config import FPS, REALSENSE_HEIGHT, REALSENSE_WIDTH
from rgbd_streaming.domain.errors import DeviceError
from rgbd_streaming.domain.rgbd_frame import CalibratedFrame
from rgbd_streaming.utils.point_cloud_export import save_organized_npz, save_point_cloud
from rgbd_streaming.utils.realsense_device import RealSenseDeviceAdapter
from rgbd_streaming.utils.rgbd_calibration import RGBDCalibration

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def parse_args():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description='Stream calibrated point clouds from a RealSense camera'
    )
    parser.add_argument('--device', type=int, default=0,
                        help='RealSense device index (default: 0)')
    parser.add_argument('--width', type=int, default=REALSENSE_WIDTH,
                        help=f'Stream width (default: {REALSENSE_WIDTH})')
    parser.add_argument('--height', type=int, default=REALSENSE_HEIGHT,
                        help=f'Stream height (default: {REALSENSE_HEIGHT})')
    parser.add_argument('--fps', type=int, default=FPS,
                        help=f'Stream frame rate (default: {FPS})')
    parser.add_argument('--frames', type=int, default=0,
                        help='Stop after this many calibrated frames (0 = until Ctrl+C)')
    parser.add_argument('--mirror', action='store_true',
                        help='Undo sensor mirroring before back-projection')
    parser.add_argument('--no-normals', action='store_true',
                        help='Skip normal estimation')
    parser.add_argument('--no-align', action='store_true',
                        help='Do not align depth to color in the driver (use factory extrinsics)')
    parser.add_argument('--save-every', type=int, default=0,
                        help='Save every Nth calibrated frame (0 = never)')
    parser.add_argument('--output', '-o', type=str, default='point_clouds',
                        help='Output directory (default: point_clouds)')
    parser.add_argument('--format', choices=['ply', 'pcd', 'npz'], default='ply',
                        help='Export format (default: ply)')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Debug logging')
    return parser.parse_args()


def main():
    args = parse_args()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    adapter = RealSenseDeviceAdapter(
        width=args.width,
        height=args.height,
        fps=args.fps,
        synchronize=not args.no_align,
    )
    calibration = RGBDCalibration(
        adapter,
        mirror_enabled=args.mirror,
        normals_enabled=not args.no_normals,
    )

    try:
        calibration.connect_device(args.device)
    except DeviceError as e:
        logger.error(f"Could not connect RealSense device {args.device}: {e}")
        return 1

    output_dir = Path(args.output)
    frame = CalibratedFrame.empty()
    received = 0
    last_index = None
    start = time.time()

    try:
        while args.frames <= 0 or received < args.frames:
            if not calibration.get_frame(frame):
                time.sleep(0.002)
                continue

            received += 1
            skipped = 0 if last_index is None else max(0, frame.index - last_index - 1)
            last_index = frame.index

            if received % args.fps == 0:
                elapsed = time.time() - start
                logger.info(
                    f"Frame {frame.index}: {frame.num_valid} valid points, "
                    f"calibration {frame.calibration_ms:.1f}ms, "
                    f"{received / elapsed:.1f} fps"
                )
            if skipped:
                logger.debug(f"{skipped} frame(s) skipped before frame {frame.index}")

            if args.save_every > 0 and received % args.save_every == 0:
                path = output_dir / f"cloud_{frame.index:06d}.{args.format}"
                if args.format == 'npz':
                    save_organized_npz(frame, path)
                else:
                    save_point_cloud(frame, path)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        calibration.disconnect_device()
        frame.release()

    logger.info(f"Received {received} calibrated frames")
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
