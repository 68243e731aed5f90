"""Reprojection error statistics for frames, frame sets and the whole calibration set."""

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from infracalib.camera import Camera
from infracalib.geometry import NDArrayFloat, Pose, rig_camera_from_world
from infracalib.structures import Feature3DStore, Frame, FrameSet, Odometry


@dataclass
class ErrorStats:
    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0
    count: int = 0

    @classmethod
    def from_errors(cls, errors: NDArrayFloat) -> "ErrorStats":
        if len(errors) == 0:
            return cls()
        return cls(float(np.min(errors)), float(np.max(errors)), float(np.mean(errors)), len(errors))

    def __str__(self) -> str:
        return f"avg {self.avg:.3f} px (min {self.min:.3f}, max {self.max:.3f}, {self.count} obs)"


def frame_errors(
    frame: Frame,
    camera: Camera,
    store: Feature3DStore,
    extrinsic: Pose | None = None,
    odometry: Odometry | None = None,
) -> NDArrayFloat:
    """Pixel error of every associated keypoint of ``frame``.

    With ``extrinsic`` and ``odometry`` the camera pose is composed from the
    rig pose and the camera's extrinsic; otherwise the frame's own pose is used.
    """
    kp_idx = frame.associated
    if len(kp_idx) == 0:
        return np.zeros(0)

    if extrinsic is not None and odometry is not None:
        R, t = rig_camera_from_world(extrinsic, odometry.position, odometry.attitude)
    elif frame.pose is not None:
        R, t = frame.pose.R, frame.pose.t
    else:
        return np.zeros(0)

    points = store.get_points_as_array(frame.point_ids[kp_idx])
    return camera.reprojection_error(points, R, t, frame.kp[kp_idx])


def frame_error(
    frame: Frame,
    camera: Camera,
    store: Feature3DStore,
    extrinsic: Pose | None = None,
    odometry: Odometry | None = None,
) -> ErrorStats:
    return ErrorStats.from_errors(frame_errors(frame, camera, store, extrinsic, odometry))


def total_error(
    frame_sets: Sequence[FrameSet],
    cameras: Sequence[Camera],
    store: Feature3DStore,
    extrinsics: Sequence[Pose],
    trajectory: Sequence[Odometry | None] | None = None,
) -> ErrorStats:
    """Aggregate error over all frame sets.

    The average is the per-frame average weighted by the frame's feature
    count. ``trajectory`` overrides the odometry stored on the frame sets;
    frames of a set without odometry are evaluated with their own pose.
    """
    if trajectory is None:
        trajectory = [fs.odometry for fs in frame_sets]

    per_frame = [
        frame_error(frame, cameras[frame.camera_id], store, extrinsics[frame.camera_id], odometry)
        for fs, odometry in zip(frame_sets, trajectory)
        for frame in fs.frames
    ]
    per_frame = [s for s in per_frame if s.count > 0]
    if not per_frame:
        return ErrorStats()

    count = sum(s.count for s in per_frame)
    return ErrorStats(
        min=min(s.min for s in per_frame),
        max=max(s.max for s in per_frame),
        avg=sum(s.avg * s.count for s in per_frame) / count,
        count=count,
    )
