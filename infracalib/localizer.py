import logging
from dataclasses import dataclass
from typing import Any, Sequence

import cv2 as cv
import numpy as np
from numpy.typing import NDArray

from infracalib.camera import Camera
from infracalib.config import CalibrationConfig
from infracalib.features import FeatureExtractor, match_features
from infracalib.geometry import NDArrayFloat, NDArrayInt, Pose
from infracalib.refmap import FrameID, PlaceRecognizer, ReferenceMap
from infracalib.structures import Feature3DStore, Frame

logger = logging.getLogger(__name__)


@dataclass
class _Candidate:
    fid: FrameID
    rvec: NDArrayFloat
    tvec: NDArrayFloat
    kp_idx: NDArrayInt  # query keypoints of the inlier correspondences
    ref_ids: NDArrayInt  # map point ids of the inlier correspondences

    @property
    def num_inliers(self) -> int:
        return len(self.kp_idx)


class CameraLocalizer:
    """Localizes single camera frames against the reference map.

    Safe to call concurrently for different cameras: apart from the
    :class:`Feature3DStore`, which serializes its own updates, nothing shared
    is mutated.
    """

    def __init__(
        self,
        cameras: Sequence[Camera],
        ref_map: ReferenceMap,
        recognizer: PlaceRecognizer,
        store: Feature3DStore,
        extractor: FeatureExtractor,
        cfg: CalibrationConfig,
    ):
        self.cameras = cameras
        self.ref_map = ref_map
        self.recognizer = recognizer
        self.store = store
        self.extractor = extractor
        self.cfg = cfg

    def estimate_camera_pose(
        self, image: NDArray[Any], timestamp: int, camera_id: int, preprocess: bool = False
    ) -> Frame | None:
        """Extract features from ``image`` and localize the resulting frame.

        Returns None when the frame could not be localized.
        """
        kp, des = self.extractor.extract(image, preprocess=preprocess)
        frame = Frame(camera_id, timestamp, kp, des)
        if not self.localize(frame):
            return None
        return frame

    def localize(self, frame: Frame) -> bool:
        """Estimate the world-to-camera pose of ``frame`` and link its inliers to Feature3Ds.

        On success the frame keeps only the inlier keypoints, each associated
        with the Feature3D merged from its map point. On failure the frame is
        left without a pose.
        """
        min_corr = self.cfg.min_correspondences
        candidates = self.recognizer.knn_match(frame, self.cfg.nearest_image_matches)
        if not candidates:
            logger.debug("cam%d@%d: place recognition returned no candidates", frame.camera_id, frame.timestamp)
            return False

        # Normalized image coordinates, so that one threshold fits every camera
        rays = self.cameras[frame.camera_id].lift_projective(frame.kp)[:, :2]

        best: _Candidate | None = None
        for fid in candidates:
            ref_frame = self.ref_map.frame(fid)
            _, matches = match_features(frame.des, ref_frame.des, self.cfg.max_distance_ratio)
            if len(matches) < min_corr:
                logger.debug("cam%d: %d matches with map frame %s, skipping", frame.camera_id, len(matches), fid)
                continue

            # keep matches whose map keypoint has a scene point
            ref_ids = ref_frame.point_ids[matches[:, 1]]
            has_point = ref_ids >= 0
            matches, ref_ids = matches[has_point], ref_ids[has_point]
            if len(matches) < min_corr:
                logger.debug("cam%d: %d 2D-3D correspondences with %s, skipping", frame.camera_id, len(matches), fid)
                continue

            candidate = self._solve_pnp(fid, rays[matches[:, 0]], matches[:, 0], ref_ids)
            if candidate is None:
                continue
            logger.debug("cam%d: %d PnP inliers with %s", frame.camera_id, candidate.num_inliers, fid)
            if best is None or candidate.num_inliers > best.num_inliers:
                best = candidate

        if best is None or best.num_inliers < min_corr:
            logger.debug(
                "cam%d@%d: localization failed (%d inliers)",
                frame.camera_id,
                frame.timestamp,
                0 if best is None else best.num_inliers,
            )
            return False

        frame.pose = Pose.from_rotvec(best.rvec, best.tvec, frame.timestamp)

        # Keypoints without a scene point carry no calibration signal
        frame.keep(best.kp_idx)
        self.store.attach(frame, np.arange(best.num_inliers), best.ref_ids, self.ref_map.points[best.ref_ids])
        logger.info("cam%d@%d: localized against %s with %d inliers", frame.camera_id, frame.timestamp, best.fid, best.num_inliers)
        return True

    def _solve_pnp(
        self, fid: FrameID, image_points: NDArrayFloat, kp_idx: NDArrayInt, ref_ids: NDArrayInt
    ) -> _Candidate | None:
        object_points = self.ref_map.points[ref_ids]
        try:
            pnp_ok, rvec, tvec, inliers = cv.solvePnPRansac(
                np.ascontiguousarray(object_points, dtype=np.float64),
                np.ascontiguousarray(image_points, dtype=np.float64),
                np.eye(3),
                None,
                iterationsCount=self.cfg.pnp_iterations,
                reprojectionError=self.cfg.scaled_reproj_error_thresh,
                confidence=self.cfg.pnp_confidence,
                flags=cv.SOLVEPNP_EPNP,
            )
        except cv.error as e:
            logger.debug("solvePnPRansac failed for %s: %s", fid, e)
            return None
        if not pnp_ok or inliers is None:
            return None

        inliers = inliers.ravel()
        return _Candidate(fid, rvec.ravel(), tvec.ravel(), kp_idx[inliers], ref_ids[inliers])
