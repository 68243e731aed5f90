from __future__ import annotations

import numpy as np
import pytest
from conftest import make_rig_scene

from infracalib.geometry import Pose
from infracalib.reprojection import ErrorStats, frame_error, total_error
from infracalib.structures import Frame, FrameSet, Odometry


def test_frame_without_features_reports_zeros(rig_scene) -> None:
    empty = Frame(0, 1, pose=Pose.identity())
    stats = frame_error(empty, rig_scene.cameras[0], rig_scene.store)
    assert stats == ErrorStats(0.0, 0.0, 0.0, 0)

    no_pose = Frame(0, 1, kp=np.zeros((3, 2), dtype=np.float32), point_ids=np.array([0, 1, 2]))
    assert frame_error(no_pose, rig_scene.cameras[0], rig_scene.store).count == 0


def test_weighted_average_over_frames() -> None:
    scene = make_rig_scene(num_sets=1, pixel_noise=0.0)
    frame_a, frame_b = scene.frame_sets[0].frames[:2]
    frame_a.kp[:, 0] += 1.0
    frame_b.kp[:, 1] += 3.0
    frame_sets = [FrameSet(0, [frame_a, frame_b])]
    extrinsics = [Pose.identity()] * len(scene.cameras)

    # no odometry: frames are evaluated with their own pose
    stats = total_error(frame_sets, scene.cameras, scene.store, extrinsics)

    n_a, n_b = frame_a.num_features, frame_b.num_features
    assert stats.count == n_a + n_b
    assert stats.avg == pytest.approx((n_a * 1.0 + n_b * 3.0) / (n_a + n_b), abs=1e-3)
    assert stats.min == pytest.approx(1.0, abs=1e-3)
    assert stats.max == pytest.approx(3.0, abs=1e-3)


def test_rig_pose_error_matches_frame_pose_error() -> None:
    scene = make_rig_scene(num_sets=2, pixel_noise=0.5)
    for fs, truth in zip(scene.frame_sets, scene.trajectory):
        for frame in fs.frames:
            camera = scene.cameras[frame.camera_id]
            own = frame_error(frame, camera, scene.store)
            rig = frame_error(frame, camera, scene.store, scene.extrinsics[frame.camera_id], truth)
            assert rig.avg == pytest.approx(own.avg, rel=1e-6)
            assert rig.count == own.count


def test_total_error_with_explicit_trajectory() -> None:
    scene = make_rig_scene(num_sets=2, pixel_noise=0.0)
    good = total_error(scene.frame_sets, scene.cameras, scene.store, scene.extrinsics, scene.trajectory)
    assert good.avg < 1e-4

    shifted = [Odometry(o.timestamp, o.position + [0.0, 0.0, 0.2], o.attitude) for o in scene.trajectory]
    bad = total_error(scene.frame_sets, scene.cameras, scene.store, scene.extrinsics, shifted)
    assert bad.avg > 1.0
    # the stored odometry is not touched by an explicit trajectory
    assert all(fs.odometry is None for fs in scene.frame_sets)


def test_total_error_of_nothing() -> None:
    assert total_error([], [], None, []) == ErrorStats()
