from __future__ import annotations

import numpy as np
import pytest

from infracalib.geometry import Pose
from infracalib.structures import CameraRigExtrinsics, Feature3DStore, Frame, FrameSet


def _frame(camera_id: int, n: int = 4) -> Frame:
    return Frame(camera_id, 7, np.zeros((n, 2), dtype=np.float32), np.zeros((n, 8), dtype=np.float32))


def test_attach_merges_by_reference_point() -> None:
    store = Feature3DStore()
    a, b = _frame(0), _frame(1)
    xyz = np.arange(9.0).reshape(3, 3)

    store.attach(a, np.array([0, 2]), np.array([10, 11]), xyz[:2])
    store.attach(b, np.array([1, 3]), np.array([11, 12]), xyz[1:])

    assert len(store) == 3
    np.testing.assert_array_equal(a.point_ids, [0, -1, 1, -1])
    np.testing.assert_array_equal(b.point_ids, [-1, 1, -1, 2])
    assert store[1].observations == [(0, 7, 2), (1, 7, 1)]
    assert store.index_of(12) == 2


def test_detach_removes_observations() -> None:
    store = Feature3DStore()
    a, b = _frame(0), _frame(1)
    store.attach(a, np.array([0]), np.array([5]), np.zeros((1, 3)))
    store.attach(b, np.array([0]), np.array([5]), np.zeros((1, 3)))

    store.detach(b)
    assert store[0].observations == [(0, 7, 0)]
    assert np.all(b.point_ids == -1)


def test_truncate_drops_records_created_after_a_size() -> None:
    store = Feature3DStore()
    a, b = _frame(0), _frame(1)
    store.attach(a, np.array([0]), np.array([5]), np.zeros((1, 3)))
    size = store.size
    store.attach(b, np.array([0, 1]), np.array([5, 6]), np.zeros((2, 3)))

    store.detach(b)
    store.truncate(size)
    assert len(store) == 1
    assert store.index_of(6) is None
    assert store[0].observations == [(0, 7, 0)]


def test_frame_keep_reorders_columns() -> None:
    frame = Frame(0, 1, np.arange(8, dtype=np.float32).reshape(4, 2), np.arange(4, dtype=np.float32)[:, None])
    frame.keep(np.array([3, 1]))
    np.testing.assert_array_equal(frame.kp, [[6, 7], [2, 3]])
    np.testing.assert_array_equal(frame.des.ravel(), [3, 1])
    assert frame.num_features == 2


def test_frame_set_completeness() -> None:
    fs = FrameSet(1, [_frame(0), _frame(2)])
    assert fs.camera_ids == [0, 2]
    assert fs.frame(1) is None
    assert not fs.is_complete(3)
    assert fs.is_complete(1)


def test_reference_camera_stays_identity() -> None:
    extrinsics = CameraRigExtrinsics(3)
    with pytest.raises(ValueError):
        extrinsics.set_pose(0, Pose.from_rt(np.eye(3), [1.0, 0.0, 0.0]))
    with pytest.raises(ValueError):
        extrinsics.set_poses([Pose.identity()])

    extrinsics.set_pose(2, Pose.from_rt(np.eye(3), [0.0, 1.0, 0.0]))
    assert extrinsics.to_dict()["cameras"][2]["translation"] == [0.0, 1.0, 0.0]
    extrinsics.reset()
    assert all(p.is_identity() for p in extrinsics)
