"""Infrastructure-based extrinsic calibration of a multi-camera rig."""

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Sequence

import cv2 as cv
import numpy as np
from numpy.typing import NDArray

from infracalib.ba import refine_rig
from infracalib.camera import Camera
from infracalib.config import CalibrationConfig
from infracalib.errors import CalibrationError, MapLoadError
from infracalib.features import FeatureExtractor
from infracalib.initializer import initialize_extrinsics
from infracalib.localizer import CameraLocalizer
from infracalib.persistence import load_frame_sets, save_frame_sets
from infracalib.refmap import PlaceRecognizer, ReferenceMap, VocabularyPlaceRecognizer
from infracalib.reprojection import ErrorStats, frame_error, total_error
from infracalib.structures import CameraRigExtrinsics, Feature3DStore, Frame, FrameSet

logger = logging.getLogger(__name__)


class InfrastructureCalibration:
    """Calibrates the extrinsics of a camera rig against a pre-built reference map.

    Typical use::

        calib = InfrastructureCalibration(cameras, cfg)
        calib.load_map(map_dir)
        for images, timestamp in stream:
            calib.add_frame_set(images, timestamp)
        extrinsics = calib.run()
    """

    def __init__(
        self,
        cameras: Sequence[Camera],
        cfg: CalibrationConfig | None = None,
        extractor: FeatureExtractor | None = None,
    ):
        self.cameras = list(cameras)
        self.cfg = cfg if cfg is not None else CalibrationConfig()
        self.extractor = extractor if extractor is not None else FeatureExtractor(self.cfg.feature_type, self.cfg.num_features)

        self.extrinsics = CameraRigExtrinsics(len(self.cameras))
        self.store = Feature3DStore()
        self.ref_map: ReferenceMap | None = None
        self.recognizer: PlaceRecognizer | None = None
        self._localizer: CameraLocalizer | None = None
        self._frame_sets: list[FrameSet] = []
        self._odometry_distance = 0.0
        self._last_xy: NDArray[np.float64] | None = None

    @property
    def num_cameras(self) -> int:
        return len(self.cameras)

    @property
    def frame_sets(self) -> list[FrameSet]:
        return self._frame_sets

    @property
    def odometry_distance(self) -> float:
        """Path length accumulated by :meth:`add_odometry`."""
        return self._odometry_distance

    def load_map(self, map_dir: Path) -> None:
        """Load the reference map, build its place recognizer and reset the session.

        Raises:
            MapLoadError: if the map cannot be read; the session is left untouched.
        """
        try:
            ref_map = ReferenceMap.load(map_dir)
        except MapLoadError as e:
            logger.error("%s", e)
            raise
        logger.info("Loaded reference map from %s: %d frames, %d points", map_dir, ref_map.num_frames, len(ref_map.points))

        recognizer = VocabularyPlaceRecognizer(self.cfg.vocabulary_size)
        recognizer.setup(ref_map)
        self.set_reference_map(ref_map, recognizer)

    def set_reference_map(self, ref_map: ReferenceMap, recognizer: PlaceRecognizer) -> None:
        self.ref_map = ref_map
        self.recognizer = recognizer
        self._localizer = CameraLocalizer(self.cameras, ref_map, recognizer, self.store, self.extractor, self.cfg)
        self.reset()

    def reset(self) -> None:
        self._frame_sets.clear()
        self.store.clear()
        self.extrinsics.reset()
        self._odometry_distance = 0.0
        self._last_xy = None

    def add_frame_set(
        self, images: Sequence[NDArray[Any] | None], timestamp: int, preprocess: bool | None = None
    ) -> bool:
        """Localize one synchronized image set and keep it if it is a new keyframe.

        ``images[i]`` belongs to camera ``i``; None means camera ``i`` has no
        image at this instant. Returns whether a frame set was added.
        """
        if len(images) != self.num_cameras:
            logger.warning("Expected %d images, got %d; ignoring frame set at %d", self.num_cameras, len(images), timestamp)
            return False
        if self._localizer is None:
            raise CalibrationError("No reference map: call load_map() or set_reference_map() first")
        if preprocess is None:
            preprocess = self.cfg.preprocess

        # Feature3D records created from here on belong to this frame set only
        arena_size = self.store.size

        # One task per camera, joined before proceeding
        with ThreadPoolExecutor(max_workers=self.num_cameras) as pool:
            futures = [
                pool.submit(self._localize_camera, image, timestamp, cam_id, preprocess)
                for cam_id, image in enumerate(images)
                if image is not None and image.size > 0
            ]
            frames = [f for f in (future.result() for future in futures) if f is not None]

        frame_set = FrameSet(timestamp, frames)
        if len(frames) < 2:
            logger.debug("Frame set at %d: only %d camera(s) localized, skipping", timestamp, len(frames))
            self._discard(frame_set, arena_size)
            return False
        if not self._is_keyframe(frame_set):
            logger.debug("Frame set at %d: rig has not moved enough, skipping", timestamp)
            self._discard(frame_set, arena_size)
            return False

        self._frame_sets.append(frame_set)
        logger.info("Added frame set #%d at %d with cameras %s", len(self._frame_sets), timestamp, frame_set.camera_ids)
        return True

    def _localize_camera(self, image: NDArray[Any], timestamp: int, camera_id: int, preprocess: bool) -> Frame | None:
        try:
            return self._localizer.estimate_camera_pose(image, timestamp, camera_id, preprocess)
        except cv.error as e:
            logger.warning("cam%d@%d: cannot process image: %s", camera_id, timestamp, e)
            return None

    def _discard(self, frame_set: FrameSet, arena_size: int) -> None:
        for frame in frame_set.frames:
            self.store.detach(frame)
        self.store.truncate(arena_size)

    def _is_keyframe(self, frame_set: FrameSet) -> bool:
        """Accept the first set; later ones only if every shared camera moved more than the threshold."""
        if not self._frame_sets:
            return True
        previous = self._frame_sets[-1]
        distances = [
            np.linalg.norm(frame.pose.center - prev_frame.pose.center)
            for frame in frame_set.frames
            if (prev_frame := previous.frame(frame.camera_id)) is not None
        ]
        if not distances:
            return False
        return min(distances) > self.cfg.min_keyframe_distance

    def add_odometry(self, x: float, y: float, yaw: float, timestamp: int) -> None:
        """Accumulate the planar path length; used for diagnostics only."""
        xy = np.array([x, y], dtype=np.float64)
        if self._last_xy is not None:
            self._odometry_distance += float(np.hypot(*(xy - self._last_xy)))
        self._last_xy = xy

    def run(self) -> CameraRigExtrinsics:
        """Initialize the extrinsics from the collected frame sets and refine them.

        Raises:
            NoCompleteFrameSetError: if no frame set contains every camera.
        """
        logger.info("Calibrating %d cameras from %d frame sets", self.num_cameras, len(self._frame_sets))
        if self.cfg.verbose:
            self._log_localization_stats()

        initialize_extrinsics(self._frame_sets, self.cameras, self.store, self.extrinsics)
        self.optimize()

        logger.info("Odometry distance: %.2f m", self._odometry_distance)
        return self.extrinsics

    def optimize(self, optimize_scene_points: bool | None = None) -> ErrorStats:
        """Jointly refine extrinsics and trajectory; returns the final error."""
        refine_rig(self._frame_sets, self.cameras, self.store, self.extrinsics, self.cfg, optimize_scene_points)
        stats = self.reprojection_error()
        logger.info("Final reprojection error: %s", stats)
        return stats

    def reprojection_error(self) -> ErrorStats:
        return total_error(self._frame_sets, self.cameras, self.store, self.extrinsics)

    def _log_localization_stats(self) -> None:
        frames = [f for fs in self._frame_sets for f in fs.frames]
        if not frames:
            return
        errors = [frame_error(f, self.cameras[f.camera_id], self.store).avg for f in frames]
        logger.info("Average reprojection error of localized frames: %.3f px", float(np.mean(errors)))
        logger.info("Average number of frames per set: %.2f", len(frames) / len(self._frame_sets))

    def save_frame_sets(self, filename: Path) -> None:
        save_frame_sets(filename, self._frame_sets, self.store)

    def load_frame_sets(self, filename: Path) -> None:
        """Replace the session's frame sets with persisted ones (no localization needed)."""
        frame_sets, store = load_frame_sets(filename)
        self.reset()
        self._frame_sets.extend(frame_sets)
        self.store = store
        if self._localizer is not None:
            self._localizer.store = store
