"""Fused rig pose per frame set under an extrinsics hypothesis."""

from typing import Sequence

import numpy as np

from infracalib.geometry import Pose, attitude_from_matrix, quaternion_average
from infracalib.structures import FrameSet, Odometry


def estimate_rig_pose(frame_set: FrameSet, extrinsics: Sequence[Pose]) -> Odometry | None:
    """Average the reference-camera poses implied by every localized frame of the set.

    Each frame gives ``T_world_ref = pose^-1 @ T_ref_cam^-1``; positions are
    averaged arithmetically and rotations with :func:`quaternion_average`.
    """
    frames = [f for f in frame_set.frames if f.pose is not None]
    if not frames:
        return None

    rig_poses = [frame.pose.inverse() @ extrinsics[frame.camera_id].inverse() for frame in frames]
    position = np.mean([H.t for H in rig_poses], axis=0)
    q = quaternion_average(np.array([H.q for H in rig_poses]))
    attitude = attitude_from_matrix(Pose(q).R)
    return Odometry(frames[0].timestamp, position, attitude)


def estimate_trajectory(frame_sets: Sequence[FrameSet], extrinsics: Sequence[Pose]) -> list[Odometry | None]:
    return [estimate_rig_pose(fs, extrinsics) for fs in frame_sets]


def install_trajectory(frame_sets: Sequence[FrameSet], trajectory: Sequence[Odometry | None]) -> None:
    """Store the trajectory on the frame sets.

    Existing odometry records are updated in place so that any holder of a
    reference (e.g. a solver parameter block) sees the new values.
    """
    for fs, odometry in zip(frame_sets, trajectory):
        if odometry is None:
            continue
        if fs.odometry is None:
            fs.odometry = odometry
        else:
            fs.odometry.timestamp = odometry.timestamp
            fs.odometry.update(odometry.position, odometry.attitude)
