"""Reference ("infrastructure") map and place recognition against it."""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path
from typing import Any, Iterable, NamedTuple, Protocol

import cv2 as cv
import numpy as np
from numpy.typing import NDArray

from infracalib.errors import MapLoadError
from infracalib.geometry import NDArrayFloat
from infracalib.persistence import pack_frames, unpack_frames
from infracalib.structures import Frame

logger = logging.getLogger(__name__)


class FrameID(NamedTuple):
    camera_idx: int
    segment_idx: int
    frame_idx: int


class ReferenceMap:
    """Per-camera sequences of mapped frames plus their triangulated scene points.

    Keypoint ``point_ids`` of a mapped frame index into ``points``; the index
    is the identity of the scene point.
    """

    MAP_FILENAME = "reference_map.npz"

    def __init__(self, num_cameras: int, points: NDArrayFloat | None = None):
        self.segments: list[list[list[Frame]]] = [[] for _ in range(num_cameras)]
        self.points = np.zeros((0, 3)) if points is None else np.asarray(points, dtype=np.float64).reshape(-1, 3)

    @property
    def num_cameras(self) -> int:
        return len(self.segments)

    @property
    def num_frames(self) -> int:
        return sum(len(seg) for segs in self.segments for seg in segs)

    def add_segment(self, camera_idx: int, frames: list[Frame]) -> int:
        self.segments[camera_idx].append(list(frames))
        return len(self.segments[camera_idx]) - 1

    def frame(self, fid: FrameID) -> Frame:
        return self.segments[fid.camera_idx][fid.segment_idx][fid.frame_idx]

    def iter_frames(self) -> Iterable[tuple[FrameID, Frame]]:
        for cam_idx, segs in enumerate(self.segments):
            for seg_idx, seg in enumerate(segs):
                for frame_idx, frame in enumerate(seg):
                    yield FrameID(cam_idx, seg_idx, frame_idx), frame

    def save(self, map_dir: Path) -> Path:
        map_dir.mkdir(parents=True, exist_ok=True)
        fids, frames = zip(*self.iter_frames()) if self.num_frames else ((), ())
        path = map_dir / self.MAP_FILENAME
        np.savez(
            path,
            num_cameras=self.num_cameras,
            frame_segment=np.array([fid.segment_idx for fid in fids], dtype=np.int64),
            frame_index=np.array([fid.frame_idx for fid in fids], dtype=np.int64),
            points=self.points,
            **pack_frames(list(frames)),
        )
        return path

    @classmethod
    def load(cls, map_dir: Path) -> ReferenceMap:
        path = Path(map_dir) / cls.MAP_FILENAME
        if not path.exists():
            raise MapLoadError(f"Cannot read map file {path}: file does not exist")
        try:
            with np.load(path) as data:
                ref_map = cls(int(data["num_cameras"]), data["points"])
                frames = unpack_frames(data)
                segment_ids = data["frame_segment"]
                frame_ids = data["frame_index"]
        except (OSError, KeyError, ValueError, zipfile.BadZipFile) as e:
            raise MapLoadError(f"Cannot read map file {path}: {e}") from e

        for frame, seg_idx, frame_idx in zip(frames, segment_ids, frame_ids):
            segs = ref_map.segments[frame.camera_id]
            while len(segs) <= seg_idx:
                segs.append([])
            if frame_idx != len(segs[seg_idx]):
                raise MapLoadError(f"Cannot read map file {path}: frames are not stored in sequence order")
            segs[seg_idx].append(frame)
        return ref_map


class PlaceRecognizer(Protocol):
    def knn_match(self, frame: Frame, k: int) -> list[FrameID]:
        """Ranked ids of the ``k`` mapped frames most similar to ``frame``."""
        ...


class VocabularyPlaceRecognizer:
    """Bag-of-visual-words place recognition over a reference map.

    A k-means vocabulary is trained on the map descriptors; every mapped frame
    becomes an L2-normalised tf-idf histogram of visual words and queries are
    ranked by cosine similarity.
    """

    def __init__(self, vocabulary_size: int = 256, max_training_descriptors: int = 100_000, seed: int = 0):
        self.vocabulary_size = vocabulary_size
        self.max_training_descriptors = max_training_descriptors
        self.seed = seed
        self._vocabulary: NDArray[np.float32] = np.zeros((0, 0), dtype=np.float32)
        self._idf: NDArrayFloat = np.zeros(0)
        self._histograms: NDArrayFloat = np.zeros((0, 0))
        self._frame_ids: list[FrameID] = []

    def setup(self, ref_map: ReferenceMap) -> None:
        entries = [(fid, frame) for fid, frame in ref_map.iter_frames() if len(frame.des)]
        if not entries:
            logger.warning("Reference map has no descriptors; place recognition will return no candidates.")
            return
        self._frame_ids = [fid for fid, _ in entries]

        all_des = np.vstack([frame.des for _, frame in entries]).astype(np.float32)
        if len(all_des) > self.max_training_descriptors:
            rng = np.random.default_rng(self.seed)
            all_des = all_des[rng.choice(len(all_des), self.max_training_descriptors, replace=False)]

        k = min(self.vocabulary_size, len(all_des))
        criteria = (cv.TERM_CRITERIA_EPS + cv.TERM_CRITERIA_MAX_ITER, 50, 1e-3)
        cv.setRNGSeed(self.seed)
        _, _, centers = cv.kmeans(all_des, k, None, criteria, 3, cv.KMEANS_PP_CENTERS)
        self._vocabulary = centers.astype(np.float32)

        counts = np.stack([self._word_counts(frame.des) for _, frame in entries])  # (F, k)
        doc_freq = np.count_nonzero(counts, axis=0)
        self._idf = np.log(len(entries) / np.maximum(doc_freq, 1))
        self._histograms = np.stack([self._tfidf(c) for c in counts])
        logger.info("Place recognition: %d words over %d mapped frames.", k, len(entries))

    def _word_counts(self, des: NDArray[Any]) -> NDArrayFloat:
        bf = cv.BFMatcher(cv.NORM_L2, crossCheck=False)
        words = [m.trainIdx for m in bf.match(des.astype(np.float32), self._vocabulary)]
        return np.bincount(words, minlength=len(self._vocabulary)).astype(np.float64)

    def _tfidf(self, counts: NDArrayFloat) -> NDArrayFloat:
        total = counts.sum()
        if total == 0:
            return np.zeros_like(counts)
        h = counts / total * self._idf
        norm = np.linalg.norm(h)
        return h / norm if norm > 0 else h

    def knn_match(self, frame: Frame, k: int) -> list[FrameID]:
        if len(self._frame_ids) == 0 or len(frame.des) == 0:
            return []
        if frame.des.shape[1] != self._vocabulary.shape[1]:
            logger.warning("Query descriptor length %d does not match the vocabulary.", frame.des.shape[1])
            return []
        scores = self._histograms @ self._tfidf(self._word_counts(frame.des))
        ranked = np.argsort(-scores, kind="stable")[:k]
        return [self._frame_ids[i] for i in ranked if scores[i] > 0]
