"""Configuration for the infrastructure-based rig calibration pipeline."""

from dataclasses import dataclass
from typing import Literal


@dataclass
class CalibrationConfig:
    """Configuration for infrastructure-based extrinsic calibration.

    Modify the default values here for experimentation.
    The CLI exposes the most common fields as options.
    """

    # Feature extraction
    feature_type: Literal["sift", "disk"] = "sift"
    """Feature extraction method: 'sift' or 'disk'"""

    num_features: int = 2048
    """Maximum number of features to extract per image"""

    preprocess: bool = False
    """Equalize the image histogram before feature extraction"""

    # Keypoint matching
    max_distance_ratio: float = 0.7
    """Lowe's ratio threshold; a match is kept only if best < ratio * second best"""

    min_correspondences: int = 25
    """Minimum number of 2D-2D matches, 2D-3D correspondences and PnP inliers"""

    # Place recognition
    nearest_image_matches: int = 10
    """Number of candidate map frames returned by place recognition"""

    vocabulary_size: int = 256
    """Number of visual words in the place recognition vocabulary"""

    # Pose estimation
    nominal_focal_length: float = 300.0
    """Focal length (px) used to turn the pixel threshold into a ray-space threshold"""

    reproj_error_thresh: float = 2.0
    """PnP RANSAC inlier threshold in pixels"""

    pnp_iterations: int = 200
    """PnP RANSAC iteration count"""

    pnp_confidence: float = 0.99
    """PnP RANSAC confidence"""

    # Frame sets
    min_keyframe_distance: float = 0.3
    """Minimum per-camera displacement (m) between consecutive frame sets"""

    # Optimization
    optimize_scene_points: bool = False
    """Refine scene point positions together with extrinsics and trajectory"""

    cauchy_loss_scale: float = 1.0
    """Scale (px) of the Cauchy loss wrapped around every reprojection residual"""

    max_num_iterations: int = 1000
    """Maximum number of solver iterations"""

    num_threads: int = 8
    """Number of threads used internally by the solver"""

    linear_solver: str = "SPARSE_NORMAL_CHOLESKY"
    """Name of a pyceres.LinearSolverType member"""

    verbose: bool = False
    """Compute and log reprojection error diagnostics"""

    @property
    def scaled_reproj_error_thresh(self) -> float:
        """PnP threshold in normalized image coordinates."""
        return self.reproj_error_thresh / self.nominal_focal_length
