"""Camera projection capability consumed by the calibration core."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

import cv2 as cv
import numpy as np

from infracalib.geometry import NDArrayFloat


class Camera(Protocol):
    """Projection model of a single camera (intrinsics + lens distortion)."""

    def lift_projective(self, pixels: NDArrayFloat) -> NDArrayFloat:
        """(N, 2) pixels -> (N, 3) rays in the camera frame with z = 1."""
        ...

    def space_to_plane(self, points_cam: NDArrayFloat) -> NDArrayFloat:
        """(N, 3) points in the camera frame -> (N, 2) pixels."""
        ...

    def reprojection_error(
        self, points: NDArrayFloat, R: NDArrayFloat, t: NDArrayFloat, observed: NDArrayFloat
    ) -> NDArrayFloat:
        """Pixel distance between observed (N, 2) and projected world points (N, 3) under world-to-camera (R, t)."""
        ...


class PinholeCamera:
    """Pinhole camera with OpenCV distortion, backed by cv.projectPoints / cv.undistortPoints."""

    def __init__(self, K: NDArrayFloat, dist: NDArrayFloat | None = None, width: int = 0, height: int = 0):
        self.K = np.asarray(K, dtype=np.float64).reshape(3, 3)
        self.dist = np.zeros(5) if dist is None else np.asarray(dist, dtype=np.float64).ravel()
        self.width = width
        self.height = height

    @classmethod
    def from_npz(cls, path: Path) -> PinholeCamera:
        """Load intrinsics cached as ``K`` and ``dist`` (optionally ``width``/``height``)."""
        with np.load(path) as data:
            width = int(data["width"]) if "width" in data else 0
            height = int(data["height"]) if "height" in data else 0
            return cls(data["K"], data["dist"], width, height)

    def save_npz(self, path: Path) -> None:
        np.savez(path, K=self.K, dist=self.dist, width=self.width, height=self.height)

    def lift_projective(self, pixels: NDArrayFloat) -> NDArrayFloat:
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 1, 2)
        if len(pixels) == 0:
            return np.zeros((0, 3))
        xy = cv.undistortPoints(pixels, self.K, self.dist).reshape(-1, 2)
        return np.hstack([xy, np.ones((len(xy), 1))])

    def space_to_plane(self, points_cam: NDArrayFloat) -> NDArrayFloat:
        points_cam = np.asarray(points_cam, dtype=np.float64).reshape(-1, 1, 3)
        if len(points_cam) == 0:
            return np.zeros((0, 2))
        uv, _ = cv.projectPoints(points_cam, np.zeros(3), np.zeros(3), self.K, self.dist)
        return uv.reshape(-1, 2)

    def reprojection_error(
        self, points: NDArrayFloat, R: NDArrayFloat, t: NDArrayFloat, observed: NDArrayFloat
    ) -> NDArrayFloat:
        points = np.atleast_2d(np.asarray(points, dtype=np.float64))
        observed = np.atleast_2d(np.asarray(observed, dtype=np.float64))
        uv = self.space_to_plane(points @ np.asarray(R).T + np.asarray(t).ravel())
        return np.linalg.norm(uv - observed, axis=1)
