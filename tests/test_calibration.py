from __future__ import annotations

from collections import Counter

import numpy as np
import pytest
from conftest import FixedRecognizer, make_mapped_scene, query_features

from infracalib.calibration import InfrastructureCalibration
from infracalib.config import CalibrationConfig
from infracalib.geometry import Pose
from infracalib.persistence import load_frame_sets
from infracalib.refmap import FrameID

NUM_POINTS = 80
BLANK = np.zeros((0, 0), dtype=np.uint8)


class TableExtractor:
    """An "image" is a 1x1 array holding the row of its precomputed features."""

    def __init__(self):
        self.features: list[tuple[np.ndarray, np.ndarray]] = []

    def add(self, kp: np.ndarray, des: np.ndarray) -> np.ndarray:
        self.features.append((kp, des))
        return np.full((1, 1), len(self.features) - 1, dtype=np.uint8)

    def extract(self, image, preprocess: bool = False):
        return self.features[int(image[0, 0])]


CAMERA_POSES = [
    Pose.from_rotvec([0.0, 0.04, 0.0], [0.3, 0.0, 0.0]),
    Pose.from_rotvec([0.0, -0.04, 0.0], [-0.3, 0.0, 0.0]),
    Pose.from_rotvec([0.03, 0.0, 0.01], [0.0, 0.2, 0.1]),
]


@pytest.fixture
def session():
    camera, ref_map, des_points, rng = make_mapped_scene(NUM_POINTS)
    extractor = TableExtractor()
    calib = InfrastructureCalibration([camera] * len(CAMERA_POSES), CalibrationConfig(), extractor=extractor)
    calib.set_reference_map(ref_map, FixedRecognizer([FrameID(0, 0, 0)]))
    images = [extractor.add(*query_features(camera, ref_map, des_points, rng, pose)) for pose in CAMERA_POSES]
    return calib, images


def test_concurrent_cameras_share_one_record_per_map_point(session) -> None:
    calib, images = session
    assert calib.add_frame_set(images, 10)

    store = calib.store
    ref_ids = [point.ref_id for _, point in store.items()]
    assert len(ref_ids) == len(set(ref_ids))
    assert all(store.index_of(ref_id) == idx for idx, ref_id in enumerate(ref_ids))

    fs = calib.frame_sets[0]
    assert fs.camera_ids == [0, 1, 2]
    for frame in fs.frames:
        assert frame.has_pose
        assert np.all(frame.point_ids >= 0)
        for kp_idx, point_id in enumerate(frame.point_ids):
            assert frame.kp_key(kp_idx) in store[point_id].observations

    seen_by = [sorted(cam for cam, _, _ in point.observations) for _, point in store.items()]
    assert all(cams == sorted(set(cams)) for cams in seen_by)
    assert sum(cams == [0, 1, 2] for cams in seen_by) >= 60


def test_rejected_set_leaves_arena_unchanged(session) -> None:
    calib, images = session
    # camera 0 is blank and camera 2 has no image: a single localized camera
    assert not calib.add_frame_set([BLANK, images[1], None], 5)
    assert calib.frame_sets == []
    assert len(calib.store) == 0

    assert calib.add_frame_set(images, 10)
    num_points = len(calib.store)
    # same rig position again: rejected by the keyframe gate
    assert not calib.add_frame_set(images, 20)
    assert len(calib.store) == num_points
    observed_at = Counter(ts for _, point in calib.store.items() for _, ts, _ in point.observations)
    assert set(observed_at) == {10}


def test_saved_arena_only_holds_observed_points(session, tmp_path) -> None:
    calib, images = session
    assert not calib.add_frame_set([images[0], None, None], 5)
    assert calib.add_frame_set([images[0], images[1], None], 10)

    calib.save_frame_sets(tmp_path / "frame_sets.npz")
    frame_sets, store = load_frame_sets(tmp_path / "frame_sets.npz")
    assert len(frame_sets) == 1
    assert len(store) == len(calib.store)
    assert all(point.observations for _, point in store.items())


def test_blank_and_featureless_images_are_rejected() -> None:
    camera, ref_map, _, _ = make_mapped_scene(NUM_POINTS)
    calib = InfrastructureCalibration([camera, camera])
    calib.set_reference_map(ref_map, FixedRecognizer([FrameID(0, 0, 0)]))

    assert not calib.add_frame_set([BLANK, np.zeros((480, 640), dtype=np.uint8)], 1)
    assert calib.frame_sets == []
    assert len(calib.store) == 0
