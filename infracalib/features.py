import logging
import threading
from typing import Any, Literal

import cv2 as cv
import kornia as K
import kornia.feature as KF
import numpy as np
import torch
from numpy.typing import NDArray

from infracalib.geometry import NDArrayFloat, NDArrayInt

logger = logging.getLogger(__name__)

device = K.core.utils.get_cuda_or_mps_device_if_available()


def preprocess_image(image: NDArray[Any]) -> NDArray[np.uint8]:
    """Grayscale + histogram equalization."""
    gray = to_gray(image)
    return cv.equalizeHist(gray)


def to_gray(image: NDArray[Any]) -> NDArray[np.uint8]:
    if image.ndim == 3:
        image = cv.cvtColor(image, cv.COLOR_BGR2GRAY)
    if image.dtype != np.uint8:
        image = cv.normalize(image, None, 0, 255, cv.NORM_MINMAX).astype(np.uint8)
    return image


class FeatureExtractor:
    """Keypoint + descriptor extraction with SIFT (OpenCV) or DISK (kornia)."""

    def __init__(self, method: Literal["sift", "disk"] = "sift", num_features: int = 2048):
        if method not in ("sift", "disk"):
            raise ValueError(f"Unknown feature extraction method: {method}")
        self.method = method
        self.num_features = num_features
        self._disk_model = None  # Lazy load DISK model
        self._disk_lock = threading.Lock()

    def extract(self, image: NDArray[Any], preprocess: bool = False) -> tuple[NDArrayFloat, NDArray[Any]]:
        """Returns keypoints (N, 2) float32 and descriptors (N, D)."""
        img = preprocess_image(image) if preprocess else image
        if self.method == "sift":
            return self._extract_sift(img)
        return self._extract_disk(img)

    def _extract_sift(self, image: NDArray[Any]) -> tuple[NDArrayFloat, NDArray[Any]]:
        """Extract SIFT features from a single image."""
        gray = to_gray(image)
        sift = cv.SIFT_create(nfeatures=self.num_features)
        kps, des = sift.detectAndCompute(gray, None)
        if des is None:
            return np.zeros((0, 2), dtype=np.float32), np.zeros((0, sift.descriptorSize()), dtype=np.float32)

        # Convert list[cv.KeyPoint] to NDArray (N, 2)
        kp = np.array([kp.pt for kp in kps], dtype=np.float32)
        return kp, des

    def _extract_disk(self, image: NDArray[Any]) -> tuple[NDArrayFloat, NDArray[Any]]:
        """Extract DISK features from a single image."""
        with self._disk_lock:
            if self._disk_model is None:
                self._disk_model = KF.DISK.from_pretrained("depth").eval().to(device)

        if image.ndim == 2:
            rgb = cv.cvtColor(to_gray(image), cv.COLOR_GRAY2RGB)
        else:
            rgb = cv.cvtColor(image, cv.COLOR_BGR2RGB)
        # (H, W, 3) uint8 -> (1, 3, H, W) float in [0, 1]
        img_tensor = torch.from_numpy(rgb).permute(2, 0, 1)[None].float().div(255.0).to(device)

        with torch.inference_mode():
            features = self._disk_model(img_tensor, self.num_features, pad_if_not_divisible=True)[0]

        kp = features.keypoints.cpu().numpy().astype(np.float32)  # (N, 2)
        des = features.descriptors.cpu().numpy().astype(np.float32)  # (N, D)
        return kp, des


def _knn(des_from: NDArray[Any], des_to: NDArray[Any]) -> list:
    if des_from.dtype == np.uint8:
        bf = cv.BFMatcher(cv.NORM_HAMMING, crossCheck=False)
    else:
        bf = cv.BFMatcher(cv.NORM_L2, crossCheck=False)
        des_from = des_from.astype(np.float32, copy=False)
        des_to = des_to.astype(np.float32, copy=False)
    return bf.knnMatch(des_from, des_to, k=2)


def _ratio_test(knn_matches: list, ratio: float) -> dict[int, Any]:
    """Best match per query index, kept only if best < ratio * second best."""
    good = {}
    for pair in knn_matches:
        if len(pair) < 2:
            continue
        m, n = pair
        if m.distance < ratio * n.distance:
            good[m.queryIdx] = m
    return good


def match_features(
    des_query: NDArray[Any], des_train: NDArray[Any], ratio: float = 0.7
) -> tuple[NDArrayFloat, NDArrayInt]:
    """Ratio-tested, cross-checked descriptor matches.

    A pair (i, j) is returned only if j is the ratio-test-passing nearest
    neighbour of query i, and i is the ratio-test-passing nearest neighbour
    of train j.

    Returns:
        (distances (M,), matches (M, 2)) with columns (query_idx, train_idx).
    """
    empty = np.zeros((0,), dtype=np.float32), np.zeros((0, 2), dtype=np.int64)
    if len(des_query) == 0 or len(des_train) == 0:
        return empty
    if des_query.shape[1] != des_train.shape[1]:
        logger.warning("Descriptor lengths do not match (%d vs %d).", des_query.shape[1], des_train.shape[1])
        return empty
    if des_query.dtype != des_train.dtype:
        logger.warning("Descriptor types do not match (%s vs %s).", des_query.dtype, des_train.dtype)
        return empty

    fwd = _ratio_test(_knn(des_query, des_train), ratio)
    rev = _ratio_test(_knn(des_train, des_query), ratio)

    # cross-check
    matches = [m for q, m in fwd.items() if (r := rev.get(m.trainIdx)) is not None and r.trainIdx == q]
    if not matches:
        return empty

    dist = np.array([m.distance for m in matches], dtype=np.float32)  # (N,)
    return dist, np.array([(m.queryIdx, m.trainIdx) for m in matches], dtype=np.int64)  # (N, 2)
