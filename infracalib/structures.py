import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

import numpy as np

from infracalib.geometry import NDArrayFloat, NDArrayInt, Pose, matrix_from_attitude

KPKey = tuple[int, int, int]  # Keypoint observation (camera_id, timestamp, kp_idx)


@dataclass(eq=False)
class Frame:
    """One camera image at one timestamp.

    Feature2D data is stored column-wise: row ``i`` of ``kp``, ``des`` and
    ``point_ids`` is one keypoint. ``point_ids`` holds the index of the
    associated Feature3D (in the map or in a :class:`Feature3DStore`), or -1.
    """

    camera_id: int
    timestamp: int
    # Extracted keypoints and descriptors
    kp: NDArrayFloat = field(default_factory=lambda: np.zeros((0, 2), dtype=np.float32))
    des: np.ndarray = field(default_factory=lambda: np.zeros((0, 0), dtype=np.float32))
    point_ids: NDArrayInt = field(default_factory=lambda: np.zeros((0,), dtype=np.int64))
    # Estimated world-to-camera pose
    pose: Pose | None = None

    def __post_init__(self):
        if len(self.point_ids) != len(self.kp):
            self.point_ids = np.full(len(self.kp), -1, dtype=np.int64)

    @property
    def has_pose(self) -> bool:
        return self.pose is not None

    @property
    def num_features(self) -> int:
        return len(self.kp)

    @property
    def associated(self) -> NDArrayInt:
        """Indices of keypoints that have a Feature3D."""
        return np.flatnonzero(self.point_ids >= 0)

    def keep(self, kp_idx: NDArrayInt) -> None:
        """Drop every keypoint not listed in ``kp_idx`` (order follows ``kp_idx``)."""
        self.kp = self.kp[kp_idx]
        self.des = self.des[kp_idx]
        self.point_ids = self.point_ids[kp_idx]

    def kp_key(self, kp_idx: int) -> KPKey:
        return (self.camera_id, self.timestamp, int(kp_idx))


@dataclass(eq=False)
class Odometry:
    """Fused rig pose of one frame set: reference camera position and attitude in the world.

    ``position`` and ``attitude`` (yaw, pitch, roll) are updated in place so
    that they can serve as solver parameter blocks.
    """

    timestamp: int = 0
    position: NDArrayFloat = field(default_factory=lambda: np.zeros(3))
    attitude: NDArrayFloat = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.position = np.ascontiguousarray(self.position, dtype=np.float64).reshape(3).copy()
        self.attitude = np.ascontiguousarray(self.attitude, dtype=np.float64).reshape(3).copy()

    def update(self, position: NDArrayFloat, attitude: NDArrayFloat) -> None:
        self.position[:] = position
        self.attitude[:] = attitude

    @property
    def pose(self) -> Pose:
        """Reference-camera-to-world transform."""
        return Pose.from_rt(matrix_from_attitude(self.attitude), self.position, self.timestamp)


@dataclass(eq=False)
class FrameSet:
    """Frames (at most one per camera) captured at the same instant."""

    timestamp: int
    frames: list[Frame] = field(default_factory=list)
    odometry: Odometry | None = None

    @property
    def camera_ids(self) -> list[int]:
        return [frame.camera_id for frame in self.frames]

    def frame(self, camera_id: int) -> Frame | None:
        return next((f for f in self.frames if f.camera_id == camera_id), None)

    def is_complete(self, num_cameras: int) -> bool:
        return set(self.camera_ids) >= set(range(num_cameras))


@dataclass(eq=False)
class Feature3D:
    """A scene point shared by every frame that matched the same map point."""

    xyz: NDArrayFloat
    ref_id: int = -1
    observations: list[KPKey] = field(default_factory=list)

    def __post_init__(self):
        self.xyz = np.ascontiguousarray(self.xyz, dtype=np.float64).reshape(3).copy()


class Feature3DStore:
    """Arena of Feature3D records, deduplicated by reference map point id.

    ``attach`` is the only method meant to be called concurrently; it is
    serialized by a single lock.
    """

    def __init__(self):
        self._points: list[Feature3D] = []
        self._ref_to_idx: dict[int, int] = {}
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        return len(self._points)

    def __len__(self) -> int:
        return len(self._points)

    def __getitem__(self, idx: int) -> Feature3D:
        return self._points[idx]

    def items(self) -> Iterable[tuple[int, Feature3D]]:
        yield from enumerate(self._points)

    def index_of(self, ref_id: int) -> int | None:
        return self._ref_to_idx.get(ref_id, None)

    def _find_or_create(self, ref_id: int, xyz: NDArrayFloat) -> int:
        idx = self._ref_to_idx.get(ref_id)
        if idx is None:
            idx = len(self._points)
            self._points.append(Feature3D(xyz, ref_id))
            self._ref_to_idx[ref_id] = idx
        return idx

    def attach(self, frame: Frame, kp_indices: NDArrayInt, ref_ids: NDArrayInt, ref_xyz: NDArrayFloat) -> None:
        """Associate keypoints of ``frame`` with the Feature3D of each map point.

        A Feature3D is created the first time a map point is seen, and reused
        by every later keypoint (from any frame) matched to the same map point.
        """
        with self._lock:
            for kp_idx, ref_id, xyz in zip(kp_indices, ref_ids, ref_xyz):
                idx = self._find_or_create(int(ref_id), xyz)
                self._points[idx].observations.append(frame.kp_key(kp_idx))
                frame.point_ids[kp_idx] = idx

    def detach(self, frame: Frame) -> None:
        """Remove every observation made by ``frame``; its point ids are reset to -1."""
        with self._lock:
            for kp_idx in frame.associated:
                self._points[frame.point_ids[kp_idx]].observations.remove(frame.kp_key(kp_idx))
            frame.point_ids[:] = -1

    def truncate(self, size: int) -> None:
        """Drop the records created after the arena had ``size`` entries.

        Only valid when no frame still refers to those records.
        """
        with self._lock:
            for point in self._points[size:]:
                del self._ref_to_idx[point.ref_id]
            del self._points[size:]

    def get_points_as_array(self, point_ids: NDArrayInt | None = None) -> NDArrayFloat:
        if point_ids is None:
            return np.array([p.xyz for p in self._points]).reshape(-1, 3)
        return np.array([self._points[i].xyz for i in point_ids]).reshape(-1, 3)

    def clear(self) -> None:
        with self._lock:
            self._points.clear()
            self._ref_to_idx.clear()

    @classmethod
    def from_arrays(cls, xyz: NDArrayFloat, ref_ids: NDArrayInt) -> "Feature3DStore":
        store = cls()
        for p, ref_id in zip(np.asarray(xyz).reshape(-1, 3), ref_ids):
            store._find_or_create(int(ref_id), p)
        return store

    def rebuild_observations(self, frames: Iterable[Frame]) -> None:
        """Re-derive the observation lists from the frames' point ids."""
        for point in self._points:
            point.observations.clear()
        for frame in frames:
            for kp_idx in frame.associated:
                self._points[frame.point_ids[kp_idx]].observations.append(frame.kp_key(kp_idx))


class CameraRigExtrinsics:
    """Pose of every camera in the frame of camera 0 (the reference camera)."""

    def __init__(self, num_cameras: int):
        self._poses = [Pose.identity() for _ in range(num_cameras)]

    def __len__(self) -> int:
        return len(self._poses)

    def __getitem__(self, camera_id: int) -> Pose:
        return self._poses[camera_id]

    def __iter__(self):
        return iter(self._poses)

    def set_pose(self, camera_id: int, pose: Pose) -> None:
        if camera_id == 0 and not pose.is_identity(atol=1e-9):
            raise ValueError("Camera 0 is the reference camera and must stay at identity")
        self._poses[camera_id] = pose

    def set_poses(self, poses: list[Pose]) -> None:
        if len(poses) != len(self._poses):
            raise ValueError(f"Expected {len(self._poses)} poses, got {len(poses)}")
        for camera_id, pose in enumerate(poses):
            self.set_pose(camera_id, pose)

    def reset(self) -> None:
        self._poses = [Pose.identity() for _ in self._poses]

    def to_dict(self) -> dict:
        return {
            "reference_camera": 0,
            "cameras": [
                {
                    "camera_id": i,
                    "quaternion_xyzw": pose.q.tolist(),
                    "translation": pose.t.tolist(),
                    "matrix": pose.matrix().tolist(),
                }
                for i, pose in enumerate(self._poses)
            ],
        }

    def save_json(self, filename: Path) -> None:
        filename.parent.mkdir(exist_ok=True, parents=True)
        with open(filename, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
