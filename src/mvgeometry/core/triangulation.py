from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal

import numpy as np

from mvgeometry.core.geometry import intersect_rays, normalize, point_to_ray_residuals, ray_projectors
from mvgeometry.errors import InsufficientObservations

log = logging.getLogger(__name__)

Residual = Literal["ray", "reprojection"]

# Singular-value ratio of the stacked ray constraints below which rays are treated as parallel.
PARALLEL_SV_RATIO = 1e-9
MIN_DEPTH = 1e-9


@dataclass(frozen=True)
class RayObservation:
    """
    One view's evidence about a 3D point: the ray o + t d in world coordinates.

    - `weight`: confidence of the detection (> 0)
    - `proj`, `uv`: optional (3,4) projection matrix and normalized image coordinate
      the ray was cast from; required by the reprojection residual.
    """

    origin: np.ndarray  # (3,)
    direction: np.ndarray  # (3,)
    weight: float = 1.0
    proj: np.ndarray | None = field(default=None, repr=False)  # (3,4)
    uv: np.ndarray | None = None  # (2,)


@dataclass(frozen=True)
class TriangulationResult:
    pos: np.ndarray  # (3,)
    convergent: bool
    loss: float
    iterations: int
    n_views: int
    degenerate: bool = False
    reprojection_error: float | None = None


class Triangulator:
    """
    Fuse ray observations of one physical point into a 3D estimate.

    We minimize the weighted point-to-ray energy
      E(x) = sum_i w_i |(I - d_i d_i^T)(x - o_i)|^2
    starting from its closed-form solution, with damped Gauss-Newton steps
    (H + lambda I) dx = -g. The optional "reprojection" residual refines in the
    normalized image plane of each contributing camera instead.
    """

    def __init__(self, observations: Sequence[RayObservation]) -> None:
        obs = list(observations)
        if len(obs) < 2:
            raise InsufficientObservations(f"need at least 2 observations, got {len(obs)}")

        self.observations = obs
        self.origins = np.stack([np.asarray(o.origin, dtype=np.float64).reshape(3) for o in obs], axis=0)
        self.directions = normalize(
            np.stack([np.asarray(o.direction, dtype=np.float64).reshape(3) for o in obs], axis=0)
        )
        self.weights = np.array([float(o.weight) for o in obs], dtype=np.float64)

        if not (np.all(np.isfinite(self.origins)) and np.all(np.isfinite(self.directions))):
            raise ValueError("observations contain non-finite origins or directions")
        if np.any(np.linalg.norm(self.directions, axis=-1) == 0.0):
            raise ValueError("observation directions must be non-zero")
        if not np.all(np.isfinite(self.weights)) or np.any(self.weights <= 0.0):
            raise ValueError("observation weights must be finite and > 0")

    def loss_at(self, x: np.ndarray) -> float:
        r = point_to_ray_residuals(x, self.origins, self.directions)
        return float(np.sum(self.weights * np.sum(r * r, axis=-1)))

    def reprojection_error_at(self, x: np.ndarray) -> float | None:
        """RMS image-plane error (normalized image units) over observations carrying `proj` and `uv`."""
        xh = np.append(np.asarray(x, dtype=np.float64).reshape(3), 1.0)
        sq: list[float] = []
        for o in self.observations:
            if o.proj is None or o.uv is None:
                continue
            xyz = np.asarray(o.proj, dtype=np.float64).reshape(3, 4) @ xh
            if xyz[2] < MIN_DEPTH:
                # Behind (or on) the camera plane: not a valid projection.
                sq.append(float("inf"))
                continue
            e = xyz[:2] / xyz[2] - np.asarray(o.uv, dtype=np.float64).reshape(2)
            sq.append(float(e @ e))
        if not sq:
            return None
        return float(np.sqrt(np.mean(sq)))

    def _ray_step(self, x: np.ndarray, regularization_weight: float) -> np.ndarray | None:
        # Residual r_i = P_i (x - o_i) with P_i = I - d_i d_i^T, so J_i = P_i and
        # P_i^T P_i = P_i.
        P = ray_projectors(self.directions)
        r = point_to_ray_residuals(x, self.origins, self.directions)
        H = np.einsum("n,nij->ij", self.weights, P) + regularization_weight * np.eye(3)
        g = np.einsum("n,nij,nj->i", self.weights, P, r)
        return _solve_step(H, g)

    def _reprojection_step(self, x: np.ndarray, regularization_weight: float) -> np.ndarray | None:
        """Gauss-Newton step on image-plane residuals; None when no camera sees `x` in front of it."""
        H = regularization_weight * np.eye(3)
        g = np.zeros((3,), dtype=np.float64)
        xh = np.append(x, 1.0)
        used = 0
        for o, w in zip(self.observations, self.weights):
            P = np.asarray(o.proj, dtype=np.float64).reshape(3, 4)
            xyz = P @ xh
            z = xyz[2]
            if z < MIN_DEPTH:
                # Point behind this camera: its linearization is meaningless.
                continue
            J = np.array(
                [[1.0 / z, 0.0, -xyz[0] / (z * z)], [0.0, 1.0 / z, -xyz[1] / (z * z)]],
                dtype=np.float64,
            ) @ P[:, :3]
            e = np.asarray(o.uv, dtype=np.float64).reshape(2) - xyz[:2] / z
            H += w * (J.T @ J)
            g -= w * (J.T @ e)
            used += 1
        if used == 0:
            return None
        return _solve_step(H, g)

    def solve(
        self,
        max_iterations: int = 20,
        update_tolerance: float = 1e-4,
        regularization_weight: float = 1e-4,
        residual: Residual = "ray",
    ) -> TriangulationResult:
        """
        Estimate the point. Never raises on non-convergence: inspect `convergent`.

        `convergent` is True iff a step shorter than `update_tolerance` was reached
        within `max_iterations`. Degenerate (parallel) rays skip refinement and keep
        the least-squares point; a singular system or a point behind every camera
        ends refinement with `convergent=False`. `loss` is the weighted point-to-ray energy at the
        returned estimate (regularization excluded).
        """
        if max_iterations < 0:
            raise ValueError("max_iterations must be >= 0")
        if update_tolerance <= 0.0 or regularization_weight < 0.0:
            raise ValueError("update_tolerance must be > 0 and regularization_weight >= 0")
        if residual == "reprojection":
            if any(o.proj is None or o.uv is None for o in self.observations):
                raise ValueError("reprojection residual needs proj and uv on every observation")
            step_fn = self._reprojection_step
        elif residual == "ray":
            step_fn = self._ray_step
        else:
            raise ValueError(f"unknown residual: {residual!r}")

        x, sv = intersect_rays(self.origins, self.directions, self.weights)
        degenerate = bool(sv.size < 3 or sv[-1] <= PARALLEL_SV_RATIO * sv[0])
        if degenerate:
            log.warning("degenerate ray configuration (%d views): rays are parallel", len(self.observations))

        convergent = False
        iterations = 0
        # Parallel rays leave the point unconstrained along them: keep the
        # minimum-norm least-squares point.
        n_steps = 0 if degenerate else int(max_iterations)
        for it in range(n_steps):
            iterations = it + 1
            delta = step_fn(x, float(regularization_weight))
            if delta is None:
                log.debug("no usable update at iteration %d; keeping previous estimate", iterations)
                break
            if not np.all(np.isfinite(delta)):
                log.debug("non-finite update at iteration %d; keeping previous estimate", iterations)
                break
            x = x + delta
            step = float(np.linalg.norm(delta))
            log.debug("iteration %d: |dx|=%.3g", iterations, step)
            if step < update_tolerance:
                convergent = True
                break

        loss = self.loss_at(x)
        return TriangulationResult(
            pos=x,
            convergent=convergent,
            loss=loss,
            iterations=iterations,
            n_views=len(self.observations),
            degenerate=degenerate,
            reprojection_error=self.reprojection_error_at(x),
        )


def triangulate_rays(
    origins: np.ndarray,
    directions: np.ndarray,
    weights: np.ndarray | None = None,
    *,
    max_iterations: int = 20,
    update_tolerance: float = 1e-4,
    regularization_weight: float = 1e-4,
) -> TriangulationResult:
    """Convenience wrapper: triangulate from (N,3) origins and directions."""
    origins = np.asarray(origins, dtype=np.float64).reshape(-1, 3)
    directions = np.asarray(directions, dtype=np.float64).reshape(-1, 3)
    if origins.shape[0] != directions.shape[0]:
        raise ValueError("origins and directions must have the same length")
    if weights is None:
        weights = np.ones((origins.shape[0],), dtype=np.float64)
    weights = np.asarray(weights, dtype=np.float64).reshape(-1)
    obs = [RayObservation(origin=o, direction=d, weight=float(w)) for o, d, w in zip(origins, directions, weights)]
    return Triangulator(obs).solve(
        max_iterations=max_iterations,
        update_tolerance=update_tolerance,
        regularization_weight=regularization_weight,
    )


def _solve_step(H: np.ndarray, g: np.ndarray) -> np.ndarray | None:
    try:
        return np.linalg.solve(H, -g)
    except np.linalg.LinAlgError:
        return None
