"""Rigid transforms, rotation conventions and quaternion averaging.

Conventions used throughout the package:

- quaternions are stored scalar-last ``(x, y, z, w)``, the order used by
  ``scipy.spatial.transform.Rotation`` and ``pyceres.EigenQuaternionManifold``;
- a rig attitude is stored as ``(yaw, pitch, roll)`` and maps to the
  rotation ``Rz(yaw) @ Ry(pitch) @ Rx(roll)`` (roll applied first);
- a frame pose is world-to-camera, an extrinsic pose is camera-to-reference.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
from numpy.typing import NDArray
from scipy.spatial.transform import Rotation

NDArrayFloat = NDArray[np.floating[Any]]
NDArrayInt = NDArray[np.integer[Any]]


def _unit_quat(q) -> NDArrayFloat:
    q = np.ascontiguousarray(q, dtype=np.float64).reshape(4)
    n = np.linalg.norm(q)
    if n == 0.0:
        raise ValueError("Quaternion must have non-zero norm")
    return q / n


@dataclass(eq=False)
class Pose:
    """Rigid transform ``x -> R @ x + t`` with an associated timestamp."""

    q: NDArrayFloat = field(default_factory=lambda: np.array([0.0, 0.0, 0.0, 1.0]))
    t: NDArrayFloat = field(default_factory=lambda: np.zeros(3))
    timestamp: int = 0

    def __post_init__(self):
        # Both arrays may be handed to the solver as parameter blocks
        self.q = _unit_quat(self.q)
        self.t = np.ascontiguousarray(self.t, dtype=np.float64).reshape(3).copy()

    @classmethod
    def identity(cls, timestamp: int = 0) -> Pose:
        return cls(timestamp=timestamp)

    @classmethod
    def from_rt(cls, R: NDArrayFloat, t: NDArrayFloat, timestamp: int = 0) -> Pose:
        return cls(Rotation.from_matrix(R).as_quat(), np.asarray(t).ravel(), timestamp)

    @classmethod
    def from_rotvec(cls, rvec: NDArrayFloat, t: NDArrayFloat, timestamp: int = 0) -> Pose:
        return cls(Rotation.from_rotvec(np.asarray(rvec, dtype=np.float64).ravel()).as_quat(), np.asarray(t).ravel(), timestamp)

    @classmethod
    def from_matrix(cls, H: NDArrayFloat, timestamp: int = 0) -> Pose:
        H = np.asarray(H, dtype=np.float64)
        if H.shape != (4, 4):
            raise ValueError(f"Expected a 4x4 matrix, got {H.shape}")
        return cls.from_rt(H[:3, :3], H[:3, 3], timestamp)

    @property
    def R(self) -> NDArrayFloat:
        return Rotation.from_quat(self.q).as_matrix()

    @property
    def rvec(self) -> NDArrayFloat:
        return Rotation.from_quat(self.q).as_rotvec()

    def matrix(self) -> NDArrayFloat:
        H = np.eye(4)
        H[:3, :3] = self.R
        H[:3, 3] = self.t
        return H

    def inverse(self) -> Pose:
        R_inv = self.R.T
        return Pose.from_rt(R_inv, -R_inv @ self.t, self.timestamp)

    def __matmul__(self, other: Pose) -> Pose:
        """Composition ``self ∘ other`` (apply ``other`` first)."""
        R = self.R
        return Pose.from_rt(R @ other.R, R @ other.t + self.t, self.timestamp)

    def transform(self, points: NDArrayFloat) -> NDArrayFloat:
        """Apply the transform to (3,) or (N, 3) points."""
        points = np.asarray(points, dtype=np.float64)
        return points @ self.R.T + self.t

    @property
    def center(self) -> NDArrayFloat:
        """Origin of the source frame expressed in the target frame, i.e. ``-R^T t``."""
        return -self.R.T @ self.t

    def is_identity(self, atol: float = 1e-9) -> bool:
        return bool(np.allclose(self.matrix(), np.eye(4), atol=atol))


def quaternion_average(quats: NDArrayFloat, weights: NDArrayFloat | None = None) -> NDArrayFloat:
    """Mean rotation of a set of quaternions (Markley et al., 2007).

    The average is the eigenvector of ``sum_i w_i q_i q_i^T`` with the
    largest eigenvalue, which makes it insensitive to the sign of each input.
    """
    Q = np.atleast_2d(np.asarray(quats, dtype=np.float64))
    if Q.shape[0] == 0:
        raise ValueError("Cannot average an empty set of quaternions")
    w = np.ones(len(Q)) if weights is None else np.asarray(weights, dtype=np.float64)
    M = (Q * w[:, None]).T @ Q
    _, eigvecs = np.linalg.eigh(M)  # ascending eigenvalues
    q = eigvecs[:, -1]
    # canonical sign: w >= 0
    return q if q[3] >= 0 else -q


def attitude_from_matrix(R: NDArrayFloat) -> NDArrayFloat:
    """Decompose ``R = Rz(yaw) Ry(pitch) Rx(roll)`` into ``(yaw, pitch, roll)``."""
    return Rotation.from_matrix(R).as_euler("ZYX")


def matrix_from_attitude(attitude: NDArrayFloat) -> NDArrayFloat:
    return Rotation.from_euler("ZYX", np.asarray(attitude, dtype=np.float64)).as_matrix()


# Batched versions of the conversions, used by the refinement cost to
# evaluate finite-difference perturbations in a single pass.


def quat_to_matrix_batch(q: NDArrayFloat) -> NDArrayFloat:
    """(B, 4) scalar-last quaternions -> (B, 3, 3) rotation matrices."""
    q = q / np.linalg.norm(q, axis=1, keepdims=True)
    x, y, z, w = q[:, 0], q[:, 1], q[:, 2], q[:, 3]
    R = np.empty((len(q), 3, 3))
    R[:, 0, 0] = 1 - 2 * (y * y + z * z)
    R[:, 0, 1] = 2 * (x * y - z * w)
    R[:, 0, 2] = 2 * (x * z + y * w)
    R[:, 1, 0] = 2 * (x * y + z * w)
    R[:, 1, 1] = 1 - 2 * (x * x + z * z)
    R[:, 1, 2] = 2 * (y * z - x * w)
    R[:, 2, 0] = 2 * (x * z - y * w)
    R[:, 2, 1] = 2 * (y * z + x * w)
    R[:, 2, 2] = 1 - 2 * (x * x + y * y)
    return R


def attitude_to_matrix_batch(attitude: NDArrayFloat) -> NDArrayFloat:
    """(B, 3) ``(yaw, pitch, roll)`` -> (B, 3, 3) matrices ``Rz Ry Rx``."""
    cy, sy = np.cos(attitude[:, 0]), np.sin(attitude[:, 0])
    cp, sp = np.cos(attitude[:, 1]), np.sin(attitude[:, 1])
    cr, sr = np.cos(attitude[:, 2]), np.sin(attitude[:, 2])
    R = np.empty((len(attitude), 3, 3))
    R[:, 0, 0] = cy * cp
    R[:, 0, 1] = cy * sp * sr - sy * cr
    R[:, 0, 2] = cy * sp * cr + sy * sr
    R[:, 1, 0] = sy * cp
    R[:, 1, 1] = sy * sp * sr + cy * cr
    R[:, 1, 2] = sy * sp * cr - cy * sr
    R[:, 2, 0] = -sp
    R[:, 2, 1] = cp * sr
    R[:, 2, 2] = cp * cr
    return R


def rig_camera_from_world_batch(
    q_ref_cam: NDArrayFloat,
    t_ref_cam: NDArrayFloat,
    position: NDArrayFloat,
    attitude: NDArrayFloat,
) -> tuple[NDArrayFloat, NDArrayFloat]:
    """World-to-camera transforms for a camera mounted on a rig.

    The rig (reference camera) sits at ``position`` with ``attitude`` in the
    world; the camera sits at ``(q_ref_cam, t_ref_cam)`` in the rig frame.
    All inputs are batched along the first axis.

    Returns:
        (R_cam_world (B, 3, 3), t_cam_world (B, 3))
    """
    R_ref_cam = quat_to_matrix_batch(q_ref_cam)
    R_world_ref = attitude_to_matrix_batch(attitude)
    R_cam_ref = np.transpose(R_ref_cam, (0, 2, 1))
    R_cam_world = R_cam_ref @ np.transpose(R_world_ref, (0, 2, 1))
    t_cam_world = -np.einsum("bij,bj->bi", R_cam_world, position) - np.einsum("bij,bj->bi", R_cam_ref, t_ref_cam)
    return R_cam_world, t_cam_world


def rig_camera_from_world(T_ref_cam: Pose, position: NDArrayFloat, attitude: NDArrayFloat) -> tuple[NDArrayFloat, NDArrayFloat]:
    """Unbatched :func:`rig_camera_from_world_batch`; returns ``(R, t)``."""
    R, t = rig_camera_from_world_batch(
        T_ref_cam.q[None], T_ref_cam.t[None], np.asarray(position, dtype=np.float64)[None], np.asarray(attitude, dtype=np.float64)[None]
    )
    return R[0], t[0]
