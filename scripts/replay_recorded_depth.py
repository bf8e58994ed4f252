#!/usr/bin/env python3
"""
Replay Recorded Depth Through the Calibration Pipeline

Feeds a recorded session (depth_*.npz frames with a "depth" array of uint16
millimeters and a "frame_number", plus an RGB video) to RGBDCalibration with
submit_frame(). Before the next submission it consumes calibrated frames until
frame_processed() reports the last one as taken, so no frame is overwritten.

The camera model comes from the command line (--fx/--fy/--cx/--cy) or from a
JSON file with a 3x3 "camera_matrix" and optional "dist_coeffs".

Usage:
    python scripts/replay_recorded_depth.py --session ./recordings/session_001 \
        --rgb ./recordings/session_001/rgb.mp4 --intrinsics intrinsics.json --output ./clouds
"""

import argparse
import json
import logging
import time
from pathlib import Path

import cv2
import numpy as np

from rgbd_streaming.domain.camera_model import Intrinsics, intrinsics_from_matrix
from rgbd_streaming.domain.rgbd_frame import CalibratedFrame
from rgbd_streaming.utils.point_cloud_export import save_organized_npz, save_point_cloud
from rgbd_streaming.utils.rgbd_calibration import RGBDCalibration

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

FRAME_TIMEOUT_S = 5.0


def parse_args():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description='Replay recorded depth frames through the calibration pipeline'
    )
    parser.add_argument('--session', '-s', type=str, required=True,
                        help='Directory with depth_*.npz frames')
    parser.add_argument('--rgb', type=str, default=None,
                        help='RGB video of the session (gray placeholder colors if omitted)')
    parser.add_argument('--intrinsics', type=str, default=None,
                        help='JSON file with "camera_matrix" (3x3), "width" and "height"')
    parser.add_argument('--fx', type=float, default=None)
    parser.add_argument('--fy', type=float, default=None)
    parser.add_argument('--cx', type=float, default=None)
    parser.add_argument('--cy', type=float, default=None)
    parser.add_argument('--mirror', action='store_true',
                        help='Undo sensor mirroring before back-projection')
    parser.add_argument('--no-normals', action='store_true',
                        help='Skip normal estimation')
    parser.add_argument('--output', '-o', type=str, default=None,
                        help='Save every calibrated frame into this directory')
    parser.add_argument('--format', choices=['ply', 'pcd', 'npz'], default='ply',
                        help='Export format (default: ply)')
    return parser.parse_args()


def load_intrinsics(args, width: int, height: int) -> Intrinsics:
    """Build depth intrinsics from a JSON file or the command line."""
    if args.intrinsics:
        with open(args.intrinsics, 'r') as f:
            data = json.load(f)
        return intrinsics_from_matrix(
            np.array(data['camera_matrix']),
            data.get('width', width),
            data.get('height', height),
            dist_coeffs=data.get('dist_coeffs'),
        )

    if None in (args.fx, args.fy, args.cx, args.cy):
        raise ValueError("Provide --intrinsics or all of --fx --fy --cx --cy")
    return Intrinsics(fx=args.fx, fy=args.fy, cx=args.cx, cy=args.cy, width=width, height=height)


def drain_until_processed(calibration: RGBDCalibration, frame: CalibratedFrame) -> bool:
    """Take calibrated frames until the last submitted one has reached the consumer."""
    deadline = time.time() + FRAME_TIMEOUT_S
    while not calibration.frame_processed():
        if time.time() >= deadline:
            return False
        if not calibration.get_frame(frame):
            time.sleep(0.001)
    return True


def main():
    args = parse_args()

    depth_files = sorted(Path(args.session).glob("depth_*.npz"))
    if not depth_files:
        logger.error(f"No depth_*.npz frames in {args.session}")
        return 1

    with np.load(depth_files[0]) as first:
        height, width = first['depth'].shape

    intrinsics = load_intrinsics(args, width, height)
    logger.info(f"Replaying {len(depth_files)} frames ({width}x{height}) from {args.session}")

    video = cv2.VideoCapture(args.rgb) if args.rgb else None
    if video is not None and not video.isOpened():
        logger.error(f"Could not open RGB video {args.rgb}")
        return 1

    calibration = RGBDCalibration(
        mirror_enabled=args.mirror,
        normals_enabled=not args.no_normals,
    )
    calibration.set_camera_model(intrinsics, intrinsics)
    calibration.connect_offline()

    output_dir = Path(args.output) if args.output else None
    placeholder = np.full((height, width, 3), 128, dtype=np.uint8)
    frame = CalibratedFrame.empty()
    calibrated = 0

    try:
        for depth_file in depth_files:
            with np.load(depth_file) as data:
                depth = data['depth']
                index = int(data['frame_number']) if 'frame_number' in data else calibrated

            color = placeholder
            if video is not None:
                ok, bgr = video.read()
                if not ok:
                    logger.warning(f"RGB video ended before depth frame {index}")
                    break
                color = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
                if color.shape[:2] != depth.shape:
                    color = cv2.resize(color, (width, height), interpolation=cv2.INTER_NEAREST)

            calibration.submit_frame(depth, color, index)
            if not drain_until_processed(calibration, frame):
                logger.error(f"Frame {index} was not calibrated within {FRAME_TIMEOUT_S:.0f}s")
                break

            calibrated += 1
            logger.info(
                f"Frame {frame.index}: {frame.num_valid} valid points "
                f"({frame.calibration_ms:.1f}ms)"
            )

            if output_dir is not None:
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
        if video is not None:
            video.release()

    logger.info(f"Calibrated {calibrated}/{len(depth_files)} frames")
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
