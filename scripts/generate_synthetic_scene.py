#!/usr/bin/env python3
"""
Generate a synthetic sparse map and camera captures for calibration.

Writes the map, the mapping camera intrinsics, one observations file per
infrastructure camera and a cameras configuration that
calibrate_infrastructure.py can consume directly. Ground-truth poses are
written alongside for comparison.

Usage:
    python3 scripts/generate_synthetic_scene.py \
        --output-dir /tmp/synthetic_scene \
        --num-cameras 3 --outliers 5 --noise 0.5
"""

import argparse
import os
import sys

import yaml

# Add package to path for standalone execution
try:
    from infrastructure_calibration.synthetic import default_camera_pose, make_scene
    from infrastructure_calibration.utils import format_pose_value
except ImportError:
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    from infrastructure_calibration.synthetic import default_camera_pose, make_scene
    from infrastructure_calibration.utils import format_pose_value


def main():
    parser = argparse.ArgumentParser(
        description='Generate a synthetic sparse map with infrastructure camera captures'
    )
    parser.add_argument('--output-dir', '-o', type=str, required=True,
                        help='Directory for the generated files')
    parser.add_argument('--map-format', choices=['yaml', 'npz'], default='yaml',
                        help='Map file format')
    parser.add_argument('--keyframes', type=int, default=3,
                        help='Number of keyframes')
    parser.add_argument('--landmarks', type=int, default=50,
                        help='Number of landmarks')
    parser.add_argument('--num-cameras', type=int, default=3,
                        help='Number of infrastructure cameras')
    parser.add_argument('--correspondences', type=int, default=40,
                        help='Features per camera')
    parser.add_argument('--outliers', type=int, default=5,
                        help='Features per camera with a corrupted position')
    parser.add_argument('--noise', type=float, default=0.5,
                        help='Pixel noise standard deviation')
    parser.add_argument('--descriptor-type', choices=['float32', 'uint8'], default='float32',
                        help='Descriptor type (L2 or Hamming matching)')
    parser.add_argument('--seed', type=int, default=0,
                        help='Random seed')

    args = parser.parse_args()

    os.makedirs(args.output_dir, exist_ok=True)

    scene = make_scene(num_keyframes=args.keyframes, num_landmarks=args.landmarks,
                       seed=args.seed, descriptor_type=args.descriptor_type)

    map_path = os.path.join(args.output_dir, f"sparse_map.{args.map_format}")
    scene.graph.save(map_path)
    print(f"Map saved to: {map_path}")
    print(f"  {scene.graph.num_keyframes} keyframes, {scene.graph.num_landmarks} landmarks")

    intrinsics_path = os.path.join(args.output_dir, "intrinsics.yaml")
    with open(intrinsics_path, 'w') as f:
        yaml.safe_dump(scene.intrinsics.to_dict(), f, default_flow_style=None, sort_keys=False)

    cameras = {}
    ground_truth = {}
    for index in range(args.num_cameras):
        cam_name = f"infra_cam_{index}"
        pose = default_camera_pose(index)
        capture = scene.observe(pose, args.correspondences, num_outliers=args.outliers,
                                noise_px=args.noise, seed=args.seed + index + 1)

        observations_file = f"{cam_name}_observations.npz"
        capture.observations.save(os.path.join(args.output_dir, observations_file))

        cameras[cam_name] = {
            'intrinsics_file': 'intrinsics.yaml',
            'observations_file': observations_file,
        }
        ground_truth[cam_name] = format_pose_value(pose.translation, pose.quaternion)
        print(f"  {cam_name}: {len(capture.observations)} features, "
              f"{capture.num_outliers} outliers")

    cameras_path = os.path.join(args.output_dir, "cameras.yaml")
    with open(cameras_path, 'w') as f:
        yaml.safe_dump({'cameras': cameras}, f, sort_keys=False)

    truth_path = os.path.join(args.output_dir, "ground_truth.yaml")
    with open(truth_path, 'w') as f:
        f.write("# Ground-truth camera poses in the map frame\n")
        f.write("# [ x_m, y_m, z_m, qx, qy, qz, qw]\n")
        yaml.safe_dump(ground_truth, f, default_flow_style=None, sort_keys=False)

    print(f"Cameras config saved to: {cameras_path}")
    print(f"Ground truth saved to: {truth_path}")


if __name__ == '__main__':
    main()
