import logging
from typing import Sequence

from infracalib.camera import Camera
from infracalib.errors import NoCompleteFrameSetError
from infracalib.geometry import Pose
from infracalib.reprojection import ErrorStats, total_error
from infracalib.structures import CameraRigExtrinsics, Feature3DStore, FrameSet
from infracalib.trajectory import estimate_trajectory, install_trajectory

logger = logging.getLogger(__name__)


def extrinsics_from_frame_set(frame_set: FrameSet, num_cameras: int) -> list[Pose]:
    """Camera-to-reference poses implied by one complete frame set.

    ``T_ref_cam[j] = pose_0 @ pose_j^-1``; camera 0 is the identity.
    """
    pose_0 = frame_set.frame(0).pose
    extrinsics = [Pose.identity()]
    for cam_id in range(1, num_cameras):
        extrinsics.append(pose_0 @ frame_set.frame(cam_id).pose.inverse())
    return extrinsics


def initialize_extrinsics(
    frame_sets: Sequence[FrameSet],
    cameras: Sequence[Camera],
    store: Feature3DStore,
    extrinsics: CameraRigExtrinsics,
) -> ErrorStats:
    """Seed the extrinsics from the complete frame set that explains all frame sets best.

    Every complete frame set yields one hypothesis, which is scored by the
    weighted-average reprojection error over all frame sets with a trajectory
    estimated under that hypothesis. The winner is installed in ``extrinsics``
    and its trajectory on the frame sets.

    Raises:
        NoCompleteFrameSetError: if no frame set has a frame for every camera.
    """
    num_cameras = len(cameras)
    complete = [(i, fs) for i, fs in enumerate(frame_sets) if fs.is_complete(num_cameras)]
    if not complete:
        logger.error("None of the %d frame sets contains all %d cameras.", len(frame_sets), num_cameras)
        raise NoCompleteFrameSetError(f"No frame set out of {len(frame_sets)} contains all {num_cameras} cameras")

    best_idx, best_hypothesis, best_stats = -1, None, None
    for i, fs in complete:
        hypothesis = extrinsics_from_frame_set(fs, num_cameras)
        trajectory = estimate_trajectory(frame_sets, hypothesis)
        stats = total_error(frame_sets, cameras, store, hypothesis, trajectory)
        logger.debug("Hypothesis from frame set %d (t=%d): %s", i, fs.timestamp, stats)
        if best_stats is None or stats.avg < best_stats.avg:
            best_idx, best_hypothesis, best_stats = i, hypothesis, stats

    logger.info("Initial extrinsics from frame set %d of %d complete: %s", best_idx, len(complete), best_stats)
    extrinsics.set_poses(best_hypothesis)
    install_trajectory(frame_sets, estimate_trajectory(frame_sets, extrinsics))
    return best_stats
