from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

import numpy as np

from mvgeometry.config import SolverConfig
from mvgeometry.core.camera import CameraModel
from mvgeometry.core.triangulation import RayObservation, TriangulationResult, Triangulator
from mvgeometry.errors import UnknownCamera

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class JointReconstruction:
    """
    Per-joint triangulation of one frame.

    - `points`: (J,4) rows [x, y, z, valid] in world coordinates (NaN xyz when invalid)
    - `results`: solver output per joint, None where too few views contributed
    """

    points: np.ndarray
    results: list[TriangulationResult | None]

    @property
    def valid(self) -> np.ndarray:
        return self.points[:, 3] > 0.0


def _detections_array(det: np.ndarray) -> np.ndarray:
    det = np.asarray(det, dtype=np.float64)
    if det.ndim != 2 or det.shape[1] not in (2, 3):
        raise ValueError("detections must be (J,2) or (J,3) arrays of [u_px, v_px(, confidence)]")
    if det.shape[1] == 2:
        det = np.concatenate([det, np.ones((det.shape[0], 1), dtype=np.float64)], axis=1)
    return det


def triangulate_joints(
    cameras: Mapping[str, CameraModel],
    detections: Mapping[str, np.ndarray],
    config: SolverConfig | None = None,
) -> JointReconstruction:
    """
    Triangulate every joint independently from per-camera pixel detections.

    Views whose confidence is <= `config.min_confidence` (or whose pixel is not finite)
    are dropped; confidence becomes the ray weight. A joint failing for any reason
    (too few views, parallel rays, loss above `config.max_loss`) is marked invalid
    without affecting the others.
    """
    if config is None:
        config = SolverConfig()

    views: dict[str, np.ndarray] = {}
    n_joints = None
    for cam_id, det in detections.items():
        if cam_id not in cameras:
            raise UnknownCamera(f"detections reference unknown camera {cam_id!r}")
        arr = _detections_array(det)
        if n_joints is None:
            n_joints = arr.shape[0]
        elif arr.shape[0] != n_joints:
            raise ValueError("all cameras must report the same number of joints")
        views[cam_id] = arr
    if n_joints is None:
        n_joints = 0

    points = np.full((n_joints, 4), np.nan, dtype=np.float64)
    points[:, 3] = 0.0
    results: list[TriangulationResult | None] = []

    for j in range(n_joints):
        obs: list[RayObservation] = []
        for cam_id, arr in views.items():
            u_px, v_px, conf = arr[j]
            if not (np.isfinite(u_px) and np.isfinite(v_px) and np.isfinite(conf)):
                continue
            if conf <= config.min_confidence:
                continue
            cam = cameras[cam_id]
            uv = cam.undistort_uv(cam.pixel_to_uv(np.array([u_px, v_px], dtype=np.float64)))
            obs.append(cam.observe(uv, weight=float(conf)))

        if len(obs) < config.min_views:
            log.debug("joint %d: %d views < min_views=%d", j, len(obs), config.min_views)
            results.append(None)
            continue

        res = Triangulator(obs).solve(**config.solve_kwargs())
        results.append(res)
        if res.degenerate:
            log.warning("joint %d: degenerate ray configuration, dropped", j)
            continue
        if not res.convergent:
            log.warning("joint %d: solver did not converge (loss=%.3g)", j, res.loss)
        if config.max_loss is not None and res.loss > config.max_loss:
            log.debug("joint %d: loss %.3g above max_loss", j, res.loss)
            continue
        points[j, :3] = res.pos
        points[j, 3] = 1.0

    return JointReconstruction(points=points, results=results)


def project_skeleton(points: np.ndarray, camera: CameraModel) -> np.ndarray:
    """
    Project (J,3) or (J,4) [x, y, z(, confidence)] joints into `camera`'s image.

    Returns (J,3) rows [u_px, v_px, confidence]. Confidence is forced to 0 for joints
    with no confidence, non-finite coordinates, or behind the camera.
    """
    points = np.asarray(points, dtype=np.float64)
    if points.ndim != 2 or points.shape[1] not in (3, 4):
        raise ValueError("points must be (J,3) or (J,4)")
    xyz = points[:, :3]
    conf = points[:, 3].copy() if points.shape[1] == 4 else np.ones((points.shape[0],), dtype=np.float64)

    finite = np.all(np.isfinite(xyz), axis=1)
    safe = np.where(finite[:, None], xyz, 0.0)
    in_front = camera.depth(safe) > 0.0
    ok = finite & in_front & (conf > 0.0)

    out = np.zeros((points.shape[0], 3), dtype=np.float64)
    out[:, :2] = np.nan
    if np.any(ok):
        out[ok, :2] = camera.uv_to_pixel(camera.project(safe[ok]))
    out[:, 2] = np.where(ok, conf, 0.0)
    return out
