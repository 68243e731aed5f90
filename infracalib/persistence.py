"""Frame-set persistence as a single ``.npz`` archive.

Frames are stored as per-camera sequences ordered by timestamp; loading
rebuilds the frame sets by merging the sequences on timestamp.
"""

import logging
from pathlib import Path
from typing import Any, Mapping

import numpy as np

from infracalib.geometry import Pose
from infracalib.structures import Feature3DStore, Frame, FrameSet, Odometry

logger = logging.getLogger(__name__)


def pack_frames(frames: list[Frame]) -> dict[str, np.ndarray]:
    """Flatten frames into arrays; keypoint rows of frame ``i`` are ``offsets[i]:offsets[i+1]``."""
    non_empty = [f.des for f in frames if len(f.des)]
    des_dim = non_empty[0].shape[1] if non_empty else 0
    des_dtype = non_empty[0].dtype if non_empty else np.float32

    has_pose = np.array([f.has_pose for f in frames], dtype=bool)
    poses = [f.pose if f.pose is not None else Pose.identity() for f in frames]
    return {
        "frame_camera": np.array([f.camera_id for f in frames], dtype=np.int64),
        "frame_timestamp": np.array([f.timestamp for f in frames], dtype=np.int64),
        "frame_has_pose": has_pose,
        "frame_q": np.array([p.q for p in poses]).reshape(-1, 4),
        "frame_t": np.array([p.t for p in poses]).reshape(-1, 3),
        "frame_offsets": np.cumsum([0] + [f.num_features for f in frames]).astype(np.int64),
        "keypoints": np.vstack([f.kp.reshape(-1, 2) for f in frames] + [np.zeros((0, 2))]).astype(np.float32),
        "descriptors": np.vstack(
            [f.des.reshape(len(f.des), des_dim) for f in frames] + [np.zeros((0, des_dim), dtype=des_dtype)]
        ).astype(des_dtype),
        "point_ids": np.concatenate([f.point_ids for f in frames] + [np.zeros(0, dtype=np.int64)]).astype(np.int64),
    }


def unpack_frames(data: Mapping[str, Any]) -> list[Frame]:
    """Inverse of :func:`pack_frames`."""
    offsets = data["frame_offsets"]
    kp, des, point_ids = data["keypoints"], data["descriptors"], data["point_ids"]
    frames = []
    for i, (cam_id, ts, has_pose, q, t) in enumerate(
        zip(data["frame_camera"], data["frame_timestamp"], data["frame_has_pose"], data["frame_q"], data["frame_t"])
    ):
        rows = slice(offsets[i], offsets[i + 1])
        frames.append(
            Frame(
                camera_id=int(cam_id),
                timestamp=int(ts),
                kp=kp[rows].copy(),
                des=des[rows].copy(),
                point_ids=point_ids[rows].copy(),
                pose=Pose(q, t, int(ts)) if has_pose else None,
            )
        )
    return frames


def merge_camera_sequences(sequences: list[list[Frame]]) -> list[FrameSet]:
    """k-way merge of per-camera frame sequences sorted by timestamp.

    Each step takes every sequence front sharing the smallest timestamp,
    forms a frame set from them and advances those fronts. Sets with fewer
    than two frames are dropped.
    """
    fronts = [0] * len(sequences)
    frame_sets = []
    while True:
        heads = [seq[i] for seq, i in zip(sequences, fronts) if i < len(seq)]
        if not heads:
            break
        timestamp = min(f.timestamp for f in heads)

        frames = []
        for cam, seq in enumerate(sequences):
            if fronts[cam] < len(seq) and seq[fronts[cam]].timestamp == timestamp:
                frames.append(seq[fronts[cam]])
                fronts[cam] += 1

        if len(frames) < 2:
            logger.debug("Dropping frame set at %d with %d frame(s).", timestamp, len(frames))
            continue
        frame_sets.append(FrameSet(timestamp, frames))
    return frame_sets


def save_frame_sets(filename: Path, frame_sets: list[FrameSet], store: Feature3DStore) -> None:
    """Save frame sets, their odometry and the Feature3D arena they refer to."""
    frames = sorted((f for fs in frame_sets for f in fs.frames), key=lambda f: (f.camera_id, f.timestamp))
    odometry = [fs.odometry for fs in frame_sets if fs.odometry is not None]

    filename.parent.mkdir(exist_ok=True, parents=True)
    np.savez(
        filename,
        num_cameras=max((f.camera_id for f in frames), default=-1) + 1,
        odometry_timestamp=np.array([o.timestamp for o in odometry], dtype=np.int64),
        odometry_position=np.array([o.position for o in odometry]).reshape(-1, 3),
        odometry_attitude=np.array([o.attitude for o in odometry]).reshape(-1, 3),
        points_xyz=store.get_points_as_array(),
        points_ref_id=np.array([p.ref_id for _, p in store.items()], dtype=np.int64),
        **pack_frames(frames),
    )
    logger.info("Saved %d frame sets (%d frames, %d points) to %s", len(frame_sets), len(frames), len(store), filename)


def load_frame_sets(filename: Path) -> tuple[list[FrameSet], Feature3DStore]:
    with np.load(filename) as data:
        frames = unpack_frames(data)
        num_cameras = int(data["num_cameras"])
        store = Feature3DStore.from_arrays(data["points_xyz"], data["points_ref_id"])
        odometry = {
            int(ts): Odometry(int(ts), p, a)
            for ts, p, a in zip(data["odometry_timestamp"], data["odometry_position"], data["odometry_attitude"])
        }

    sequences: list[list[Frame]] = [[] for _ in range(num_cameras)]
    for frame in frames:
        sequences[frame.camera_id].append(frame)
    for seq in sequences:
        seq.sort(key=lambda f: f.timestamp)

    frame_sets = merge_camera_sequences(sequences)
    for fs in frame_sets:
        fs.odometry = odometry.get(fs.timestamp)
    store.rebuild_observations(f for fs in frame_sets for f in fs.frames)

    logger.info("Loaded %d frame sets (%d points) from %s", len(frame_sets), len(store), filename)
    return frame_sets, store
