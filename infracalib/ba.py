import logging
from typing import Sequence

import numpy as np
import pyceres

from infracalib.camera import Camera
from infracalib.config import CalibrationConfig
from infracalib.geometry import NDArrayFloat, Pose, rig_camera_from_world_batch
from infracalib.reprojection import total_error
from infracalib.structures import CameraRigExtrinsics, Feature3DStore, FrameSet

logger = logging.getLogger(__name__)


class RigReprojectionCost(pyceres.CostFunction):
    """Reprojection residual of one keypoint seen by a rig camera.

    Parameter blocks: extrinsic rotation (quaternion xyzw, 4), extrinsic
    translation (3), rig position (3), rig attitude (yaw, pitch, roll, 3) and,
    when ``point`` is None, the scene point (3). Jacobians are central
    finite differences, evaluated in one batched projection per block.
    """

    def __init__(self, camera: Camera, observed: NDArrayFloat, point: NDArrayFloat | None = None, step: float = 1e-6):
        super().__init__()
        self.camera = camera
        self.observed = np.asarray(observed, dtype=np.float64).reshape(2)
        self.point = None if point is None else np.asarray(point, dtype=np.float64).reshape(3).copy()
        self.step = step
        self.set_num_residuals(2)
        self.set_parameter_block_sizes([4, 3, 3, 3] if point is not None else [4, 3, 3, 3, 3])

    def _project(self, blocks: list[NDArrayFloat]) -> NDArrayFloat:
        """Batched projection; every block is (B, size). Returns (B, 2) pixels."""
        q_ref_cam, t_ref_cam, position, attitude = blocks[:4]
        point = blocks[4] if len(blocks) > 4 else np.broadcast_to(self.point, (len(q_ref_cam), 3))
        R, t = rig_camera_from_world_batch(q_ref_cam, t_ref_cam, position, attitude)
        return self.camera.space_to_plane(np.einsum("bij,bj->bi", R, point) + t)

    def Evaluate(self, parameters, residuals, jacobians):
        blocks = [np.asarray(p, dtype=np.float64).ravel() for p in parameters]
        residuals[:] = self._project([b[None] for b in blocks])[0] - self.observed

        if jacobians is None:
            return True

        for i, block in enumerate(blocks):
            jac = jacobians[i]
            if jac is None or jac.size == 0:
                continue
            n = len(block)
            h = self.step * np.maximum(1.0, np.abs(block))
            # rows 2k / 2k+1 hold the +h / -h perturbation of coordinate k
            batch = [np.repeat(b[None], 2 * n, axis=0) for b in blocks]
            batch[i][0::2] += np.diag(h)
            batch[i][1::2] -= np.diag(h)
            uv = self._project(batch)
            J = ((uv[0::2] - uv[1::2]) / (2.0 * h)[:, None]).T  # (2, n)
            jac.flat[:] = J.ravel()
        return True


def _linear_solver_type(name: str):
    try:
        return getattr(pyceres.LinearSolverType, name)
    except AttributeError:
        raise ValueError(f"Unknown linear solver type: {name}") from None


def refine_rig(
    frame_sets: Sequence[FrameSet],
    cameras: Sequence[Camera],
    store: Feature3DStore,
    extrinsics: CameraRigExtrinsics,
    cfg: CalibrationConfig,
    optimize_scene_points: bool | None = None,
) -> pyceres.SolverSummary:
    """Jointly refine camera extrinsics and the rig trajectory (optionally scene points).

    One residual is added per associated keypoint of every frame whose frame
    set has odometry. Camera 0 stays at identity. Odometry and Feature3D
    positions are updated in place; refined extrinsics are written back into
    ``extrinsics``.
    """
    if optimize_scene_points is None:
        optimize_scene_points = cfg.optimize_scene_points

    if cfg.verbose:
        logger.info("Reprojection error before refinement: %s", total_error(frame_sets, cameras, store, extrinsics))

    # Extrinsics as parameter blocks
    extrinsic_params = {cam_id: (pose.q.copy(), pose.t.copy()) for cam_id, pose in enumerate(extrinsics)}

    problem = pyceres.Problem()
    loss = pyceres.CauchyLoss(cfg.cauchy_loss_scale)
    used_cameras = set()
    used_points = set()

    for fs in frame_sets:
        odometry = fs.odometry
        if odometry is None:
            continue
        for frame in fs.frames:
            camera = cameras[frame.camera_id]
            q, t = extrinsic_params[frame.camera_id]
            for kp_idx in frame.associated:
                point_id = int(frame.point_ids[kp_idx])
                feature = store[point_id]
                observed = frame.kp[kp_idx].astype(np.float64)
                if optimize_scene_points:
                    cost = RigReprojectionCost(camera, observed)
                    blocks = [q, t, odometry.position, odometry.attitude, feature.xyz]
                    used_points.add(point_id)
                else:
                    cost = RigReprojectionCost(camera, observed, point=feature.xyz)
                    blocks = [q, t, odometry.position, odometry.attitude]
                problem.add_residual_block(cost, loss, blocks)
            used_cameras.add(frame.camera_id)

    if problem.num_residual_blocks() == 0:
        logger.warning("Nothing to refine: no frame set has odometry with associated features.")
        return pyceres.SolverSummary()

    # Quaternion manifold for proper optimization on SO(3); camera 0 is the reference
    for cam_id in used_cameras:
        q, t = extrinsic_params[cam_id]
        if cam_id == 0:
            problem.set_parameter_block_constant(q)
            problem.set_parameter_block_constant(t)
        else:
            problem.set_manifold(q, pyceres.EigenQuaternionManifold())

    options = pyceres.SolverOptions()
    options.linear_solver_type = _linear_solver_type(cfg.linear_solver)
    options.minimizer_progress_to_stdout = False
    options.max_num_iterations = cfg.max_num_iterations
    options.num_threads = cfg.num_threads

    logger.info(
        "Refining %d cameras over %d frame sets (%d residuals, %d scene points free)",
        len(used_cameras),
        len(frame_sets),
        problem.num_residual_blocks(),
        len(used_points),
    )
    summary = pyceres.SolverSummary()
    pyceres.solve(options, problem, summary)
    logger.info(summary.BriefReport())

    for cam_id in used_cameras - {0}:
        q, t = extrinsic_params[cam_id]
        extrinsics.set_pose(cam_id, Pose(q, t, extrinsics[cam_id].timestamp))

    if cfg.verbose:
        logger.info("Reprojection error after refinement: %s", total_error(frame_sets, cameras, store, extrinsics))
    return summary
