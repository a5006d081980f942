#!/usr/bin/env python3
"""
Calibrate infrastructure cameras against a sparse map.

Loads the map and the per-camera intrinsics and feature observations listed
in the cameras configuration, localizes every camera in the map frame and
writes the resulting extrinsics.

Usage:
    python3 scripts/calibrate_infrastructure.py \
        --map /path/to/sparse_map.yaml \
        --cameras-config /path/to/cameras.yaml \
        --config /path/to/calibration.yaml \
        --output /path/to/infrastructure_extrinsics.yaml
"""

import argparse
import logging
import os
import sys

import numpy as np

# Add package to path for standalone execution
try:
    from infrastructure_calibration.calibration import InfrastructureCalibration
    from infrastructure_calibration.config import CalibrationConfig, load_calibration_config
    from infrastructure_calibration.correspondence_finder import load_observations
    from infrastructure_calibration.exceptions import CalibrationError
    from infrastructure_calibration.pose import Pose
    from infrastructure_calibration.utils import (
        load_cameras_config, parse_pose_value, save_calibration_results_yaml
    )
except ImportError:
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    from infrastructure_calibration.calibration import InfrastructureCalibration
    from infrastructure_calibration.config import CalibrationConfig, load_calibration_config
    from infrastructure_calibration.correspondence_finder import load_observations
    from infrastructure_calibration.exceptions import CalibrationError
    from infrastructure_calibration.pose import Pose
    from infrastructure_calibration.utils import (
        load_cameras_config, parse_pose_value, save_calibration_results_yaml
    )


def register_cameras(calibration: InfrastructureCalibration, cameras_config: dict) -> int:
    """
    Register every camera of the configuration.

    Returns number of cameras registered.
    """
    registered = 0
    for cam_name, cam_config in cameras_config['cameras'].items():
        intrinsics_file = cam_config.get('intrinsics_file')
        if intrinsics_file is None:
            print(f"  WARNING: No intrinsics file for {cam_name}, skipping")
            continue

        prior_pose = None
        if cam_config.get('prior_pose') is not None:
            t, q = parse_pose_value(cam_config['prior_pose'], context=f"camera {cam_name}")
            prior_pose = Pose.from_quaternion(q, t)

        calibration.add_camera(cam_name, intrinsics_file, prior_pose=prior_pose,
                               search_radius=cam_config.get('search_radius'))

        observations_file = cam_config.get('observations_file')
        if observations_file is None or not os.path.exists(observations_file):
            print(f"  WARNING: No observations for {cam_name}")
        else:
            observations = load_observations(observations_file)
            calibration.add_observations(cam_name, observations)
            print(f"  {cam_name}: {len(observations)} features")
        registered += 1
    return registered


def main():
    parser = argparse.ArgumentParser(
        description='Calibrate infrastructure camera extrinsics against a sparse map'
    )
    parser.add_argument('--map', type=str, required=True,
                        help='Path to the sparse map (.yaml or .npz)')
    parser.add_argument('--cameras-config', type=str, required=True,
                        help='Path to cameras configuration YAML')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to calibration parameters YAML')
    parser.add_argument('--output', '-o', type=str, default='infrastructure_extrinsics.yaml',
                        help='Output YAML file for calibrated extrinsics')
    parser.add_argument('--reference-frame', type=str, default='map',
                        help='Name of the map frame in the output')
    parser.add_argument('--workers', type=int, default=None,
                        help='Number of cameras calibrated in parallel')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Verbose output')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
    )

    print("Loading configurations...")
    try:
        config = load_calibration_config(args.config) if args.config else CalibrationConfig()
        cameras_config = load_cameras_config(args.cameras_config)
    except (OSError, CalibrationError) as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    calibration = InfrastructureCalibration(config)

    print(f"Loading map {args.map}...")
    try:
        graph = calibration.load_map(args.map)
    except CalibrationError as e:
        print(f"ERROR: {e}")
        sys.exit(1)
    print(f"  {graph.num_keyframes} keyframes, {graph.num_landmarks} landmarks, "
          f"{graph.num_observations} observations")

    print("\nRegistering cameras...")
    try:
        registered = register_cameras(calibration, cameras_config)
    except (OSError, ValueError, CalibrationError) as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    if registered == 0:
        print("ERROR: No cameras defined in config")
        sys.exit(1)

    print("\n" + "="*60)
    print("CALIBRATING CAMERAS")
    print("="*60)

    results = calibration.run(max_workers=args.workers)

    for cam_name, result in results.items():
        if result.succeeded:
            t = result.pose.translation
            q = result.pose.quaternion
            print(f"\n✓ {cam_name} (in {args.reference_frame}):")
            print(f"  Translation: [{t[0]:.6f}, {t[1]:.6f}, {t[2]:.6f}] m")
            print(f"  Quaternion:  [{q[0]:.6f}, {q[1]:.6f}, {q[2]:.6f}, {q[3]:.6f}]")
            print(f"  Inliers:     {result.num_inliers}/{result.num_correspondences}")
            print(f"  Error:       mean {result.mean_error:.3f} px, max {result.max_error:.3f} px")
            if result.pose.covariance is not None:
                sigma = np.sqrt(np.clip(np.diag(result.pose.covariance), 0.0, None))
                print(f"  Sigma t:     [{sigma[3]:.4f}, {sigma[4]:.4f}, {sigma[5]:.4f}] m")
        else:
            print(f"\n✗ {cam_name}: {result.state.value.upper()} ({result.error})")

    succeeded = sum(1 for r in results.values() if r.succeeded)

    print("\n" + "="*60)
    print("SAVING RESULTS")
    print("="*60)

    save_calibration_results_yaml(results.values(), args.output, args.reference_frame)

    print(f"\nCalibrated {succeeded}/{len(results)} cameras")
    print(f"  Extrinsics saved to: {args.output}")

    if succeeded == 0:
        sys.exit(1)


if __name__ == '__main__':
    main()
