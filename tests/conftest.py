from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from infracalib.camera import PinholeCamera
from infracalib.geometry import Pose
from infracalib.refmap import FrameID, ReferenceMap
from infracalib.structures import Feature3DStore, Frame, FrameSet, Odometry

K = np.array([[300.0, 0.0, 320.0], [0.0, 300.0, 240.0], [0.0, 0.0, 1.0]])
WIDTH, HEIGHT = 640, 480


@dataclass
class RigScene:
    cameras: list[PinholeCamera]
    frame_sets: list[FrameSet]
    store: Feature3DStore
    extrinsics: list[Pose]  # ground truth, camera-to-reference
    trajectory: list[Odometry]  # ground truth rig poses
    points: np.ndarray


def true_extrinsics(num_cameras: int) -> list[Pose]:
    """Cameras looking in four directions around the vertical axis, slightly offset."""
    poses = [Pose.identity()]
    for j in range(1, num_cameras):
        R = Rotation.from_euler("y", 90.0 * j, degrees=True).as_matrix()
        poses.append(Pose.from_rt(R, [0.1 * j, 0.05, -0.1]))
    return poses


def make_rig_scene(
    num_cameras: int = 4,
    num_sets: int = 3,
    num_points: int = 400,
    pose_noise: float = 0.0,
    pixel_noise: float = 0.3,
    seed: int = 0,
) -> RigScene:
    """Rig moving through a shell of scene points; every frame already localized.

    ``pose_noise`` perturbs the per-frame poses (rad / m) the way PnP would,
    ``pixel_noise`` the observed keypoints.
    """
    rng = np.random.default_rng(seed)
    cameras = [PinholeCamera(K, width=WIDTH, height=HEIGHT) for _ in range(num_cameras)]
    extrinsics = true_extrinsics(num_cameras)
    trajectory = [
        Odometry(1000 * (s + 1), [1.0 * s, 0.1 * s, 0.0], [0.1 * s, 0.02, -0.01 * s]) for s in range(num_sets)
    ]

    directions = rng.normal(size=(num_points, 3))
    directions /= np.linalg.norm(directions, axis=1, keepdims=True)
    center = np.mean([o.position for o in trajectory], axis=0)
    points = center + directions * rng.uniform(4.0, 8.0, size=(num_points, 1))
    store = Feature3DStore.from_arrays(points, np.arange(num_points))

    frame_sets = []
    for odom in trajectory:
        frames = []
        for cam_id, (camera, T_ref_cam) in enumerate(zip(cameras, extrinsics)):
            pose = (odom.pose @ T_ref_cam).inverse()  # world-to-camera
            pts_cam = pose.transform(points)
            in_front = pts_cam[:, 2] > 0.5
            uv = np.full((num_points, 2), -1.0)
            uv[in_front] = camera.space_to_plane(pts_cam[in_front])
            visible = np.flatnonzero(
                in_front & (uv[:, 0] >= 0) & (uv[:, 0] < WIDTH) & (uv[:, 1] >= 0) & (uv[:, 1] < HEIGHT)
            )
            kp = (uv[visible] + rng.normal(scale=pixel_noise, size=(len(visible), 2))).astype(np.float32)
            des = rng.normal(size=(len(visible), 32)).astype(np.float32)
            if pose_noise > 0:
                pose = Pose.from_rotvec(
                    pose.rvec + rng.normal(scale=pose_noise, size=3), pose.t + rng.normal(scale=pose_noise, size=3)
                )
            frames.append(
                Frame(cam_id, odom.timestamp, kp, des, point_ids=visible.astype(np.int64), pose=Pose(pose.q, pose.t, odom.timestamp))
            )
        frame_sets.append(FrameSet(odom.timestamp, frames))

    store.rebuild_observations(f for fs in frame_sets for f in fs.frames)
    return RigScene(cameras, frame_sets, store, extrinsics, trajectory, points)


@pytest.fixture
def rig_scene() -> RigScene:
    return make_rig_scene()


@pytest.fixture
def noisy_rig_scene() -> RigScene:
    return make_rig_scene(pose_noise=0.01)


def rotation_angle(a: Pose, b: Pose) -> float:
    return float(np.linalg.norm((Rotation.from_quat(a.q) * Rotation.from_quat(b.q).inv()).as_rotvec()))


class FixedRecognizer:
    def __init__(self, candidates: list[FrameID]):
        self.candidates = candidates

    def knn_match(self, frame: Frame, k: int) -> list[FrameID]:
        return self.candidates[:k]


def make_mapped_scene(num_points: int = 80, num_unmapped: int = 40, seed: int = 5):
    """One mapped frame at the world origin observing ``num_points`` points, plus unmapped keypoints."""
    rng = np.random.default_rng(seed)
    camera = PinholeCamera(K, width=WIDTH, height=HEIGHT)
    points = np.column_stack([rng.uniform(-2, 2, num_points), rng.uniform(-1.5, 1.5, num_points), rng.uniform(4, 8, num_points)])

    des_points = rng.normal(size=(num_points, 64)).astype(np.float32)
    des_extra = rng.normal(size=(num_unmapped, 64)).astype(np.float32)
    kp = np.vstack([camera.space_to_plane(points), rng.uniform(0, 480, size=(num_unmapped, 2))]).astype(np.float32)
    ref_frame = Frame(
        0,
        0,
        kp,
        np.vstack([des_points, des_extra]),
        point_ids=np.concatenate([np.arange(num_points), np.full(num_unmapped, -1)]),
        pose=Pose.identity(),
    )
    ref_map = ReferenceMap(1, points)
    ref_map.add_segment(0, [ref_frame])
    return camera, ref_map, des_points, rng


def query_features(camera, ref_map, des_points, rng, pose: Pose) -> tuple[np.ndarray, np.ndarray]:
    """Keypoints and descriptors a camera at ``pose`` would extract, with 30 unrelated ones appended."""
    kp = camera.space_to_plane(pose.transform(ref_map.points))
    des = des_points + rng.normal(scale=0.01, size=des_points.shape)
    kp = np.vstack([kp, rng.uniform(0, 480, size=(30, 2))]).astype(np.float32)
    des = np.vstack([des, rng.normal(size=(30, des_points.shape[1]))]).astype(np.float32)
    return kp, des
