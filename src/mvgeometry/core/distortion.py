from __future__ import annotations

from dataclasses import dataclass

import numpy as np

N_COEFFS = 5


def dist_coeffs_vector(coeffs) -> np.ndarray:
    """
    Canonical (5,) OpenCV-ordered coefficient vector (k1, k2, p1, p2, k3).

    Four-coefficient vectors (no k3) are zero-padded.
    """
    c = np.asarray(coeffs, dtype=np.float64).reshape(-1)
    if c.size == 4:
        c = np.concatenate([c, np.zeros((1,), dtype=np.float64)], axis=0)
    if c.size != N_COEFFS:
        raise ValueError(f"distortion vector must have 4 or {N_COEFFS} coefficients, got {c.size}")
    if not np.all(np.isfinite(c)):
        raise ValueError("non-finite distortion coefficients")
    return c


@dataclass(frozen=True)
class BrownDistortion:
    """
    Lens distortion of a calibration record's `distCoeff`, acting on (N,2) arrays of
    camera-plane points (X/Z, Y/Z).
    """

    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0

    @classmethod
    def from_coeffs(cls, coeffs) -> "BrownDistortion":
        return cls(*(float(c) for c in dist_coeffs_vector(coeffs)))

    def coeffs(self) -> np.ndarray:
        return np.array([self.k1, self.k2, self.p1, self.p2, self.k3], dtype=np.float64)

    @property
    def is_identity(self) -> bool:
        return not np.any(self.coeffs())

    def distort(self, pts: np.ndarray) -> np.ndarray:
        pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
        r2 = np.einsum("ni,ni->n", pts, pts)
        gain = 1.0 + r2 * (self.k1 + r2 * (self.k2 + r2 * self.k3))
        # Tangential term: 2 p (x y) on the cross axis, p (r^2 + 2 a^2) on the own axis.
        prod = 2.0 * pts[:, 0] * pts[:, 1]
        p = np.array([self.p1, self.p2], dtype=np.float64)
        tangential = prod[:, None] * p[None, :] + (r2[:, None] + 2.0 * pts * pts) * p[None, ::-1]
        return pts * gain[:, None] + tangential

    def undistort(self, pts_d: np.ndarray, max_iterations: int = 20, tol: float = 1e-12) -> np.ndarray:
        """
        Invert `distort` by fixed-point iteration starting at the distorted points.

        Stops once no point moves by more than `tol`; adequate for moderate
        distortion inside the calibrated field of view.
        """
        pts_d = np.asarray(pts_d, dtype=np.float64).reshape(-1, 2)
        pts = pts_d.copy()
        if self.is_identity:
            return pts
        for _ in range(int(max_iterations)):
            correction = pts_d - self.distort(pts)
            pts += correction
            if not np.any(np.abs(correction) > tol):
                break
        return pts
