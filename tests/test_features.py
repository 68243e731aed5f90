from __future__ import annotations

import cv2 as cv
import numpy as np
import pytest

from infracalib.features import FeatureExtractor, preprocess_image


@pytest.fixture
def textured_image() -> np.ndarray:
    """Dim grayscale image with random discs and rectangles."""
    rng = np.random.default_rng(3)
    image = np.full((240, 320), 40, dtype=np.uint8)
    for _ in range(60):
        x, y = (int(v) for v in rng.integers([10, 10], [310, 230]))
        shade = int(rng.integers(50, 120))
        if rng.random() < 0.5:
            cv.circle(image, (x, y), int(rng.integers(3, 12)), shade, -1)
        else:
            cv.rectangle(image, (x, y), (x + int(rng.integers(4, 20)), y + int(rng.integers(4, 20))), shade, -1)
    return cv.GaussianBlur(image, (3, 3), 0)


def test_sift_extracts_keypoints_inside_the_image(textured_image) -> None:
    kp, des = FeatureExtractor("sift", num_features=500).extract(textured_image)

    assert kp.dtype == np.float32
    assert kp.shape[1] == 2
    assert 0 < len(kp) <= 500
    assert des.shape == (len(kp), 128)
    assert np.all((kp >= 0) & (kp < [320, 240]))


def test_preprocess_accepts_color_images(textured_image) -> None:
    bgr = cv.cvtColor(textured_image, cv.COLOR_GRAY2BGR)
    kp, des = FeatureExtractor("sift").extract(bgr, preprocess=True)
    assert len(kp) > 0
    assert des.shape == (len(kp), 128)


def test_equalization_stretches_histogram(textured_image) -> None:
    assert textured_image.max() < 130

    equalized = preprocess_image(cv.cvtColor(textured_image, cv.COLOR_GRAY2BGR))

    assert equalized.dtype == np.uint8
    assert equalized.shape == textured_image.shape
    assert equalized.min() == 0
    assert equalized.max() == 255


def test_flat_image_has_no_features() -> None:
    kp, des = FeatureExtractor("sift").extract(np.full((120, 160), 90, dtype=np.uint8))
    assert kp.shape == (0, 2)
    assert des.shape == (0, 128)


def test_unknown_method_is_rejected() -> None:
    with pytest.raises(ValueError):
        FeatureExtractor("orb")
