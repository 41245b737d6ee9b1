from __future__ import annotations

import numpy as np


def normalize(v: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """Unit vectors along the last axis. Vectors shorter than `eps` are returned as zeros."""
    v = np.asarray(v, dtype=np.float64)
    n = np.linalg.norm(v, axis=-1, keepdims=True)
    return np.where(n > eps, v / np.maximum(n, eps), 0.0)


def skew(v: np.ndarray) -> np.ndarray:
    """Cross-product matrix [v]x, so that skew(a) @ b == np.cross(a, b)."""
    x, y, z = (float(c) for c in np.asarray(v, dtype=np.float64).reshape(3))
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]], dtype=np.float64)


def homogeneous(x: np.ndarray) -> np.ndarray:
    x = np.asarray(x, dtype=np.float64)
    return np.concatenate([x, np.ones(x.shape[:-1] + (1,), dtype=np.float64)], axis=-1)


def hnormalized(x: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """
    Drop the last homogeneous coordinate by division.

    Rows whose last coordinate is (numerically) zero map to NaN.
    """
    x = np.asarray(x, dtype=np.float64)
    w = x[..., -1:]
    good = np.abs(w) > eps
    return np.where(good, x[..., :-1] / np.where(good, w, 1.0), np.nan)


def pixel_to_uv(uv_px: np.ndarray, image_size: tuple[int, int]) -> np.ndarray:
    """
    Map pixel coordinates (x right, y down) to normalized image coordinates.

    Convention: u = x_px / width, v = y_px / height, so the image spans [0,1]^2.
    """
    w, h = image_size
    uv_px = np.asarray(uv_px, dtype=np.float64)
    return uv_px / np.array([float(w), float(h)], dtype=np.float64)


def uv_to_pixel(uv: np.ndarray, image_size: tuple[int, int]) -> np.ndarray:
    """Inverse of `pixel_to_uv` for the same image size."""
    w, h = image_size
    uv = np.asarray(uv, dtype=np.float64)
    return uv * np.array([float(w), float(h)], dtype=np.float64)


def point_to_ray_residuals(x: np.ndarray, origins: np.ndarray, directions: np.ndarray) -> np.ndarray:
    """
    Perpendicular offsets (N,3) of point `x` from each ray: (I - d d^T) (x - o).

    `directions` must be unit length.
    """
    x = np.asarray(x, dtype=np.float64).reshape(1, 3)
    diff = x - np.asarray(origins, dtype=np.float64).reshape(-1, 3)
    d = np.asarray(directions, dtype=np.float64).reshape(-1, 3)
    along = np.sum(diff * d, axis=-1, keepdims=True) * d
    return diff - along


def ray_projectors(directions: np.ndarray) -> np.ndarray:
    """Stack of (N,3,3) projectors I - d d^T onto the plane orthogonal to each unit direction."""
    d = np.asarray(directions, dtype=np.float64).reshape(-1, 3)
    return np.eye(3, dtype=np.float64)[None, :, :] - d[:, :, None] * d[:, None, :]


def intersect_rays(
    origins: np.ndarray,
    directions: np.ndarray,
    weights: np.ndarray | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Closed-form least-squares intersection of N rays (o_i + t d_i).

    Each ray contributes the linear constraint sqrt(w_i) (I - d_i d_i^T)(x - o_i) = 0.
    Returns (XYZ, singular_values) of the stacked (3N,3) system; the singular
    values let callers detect parallel configurations.
    """
    o = np.asarray(origins, dtype=np.float64).reshape(-1, 3)
    d = np.asarray(directions, dtype=np.float64).reshape(-1, 3)
    if o.shape[0] != d.shape[0]:
        raise ValueError("origins and directions must have the same length")
    if weights is None:
        weights = np.ones((o.shape[0],), dtype=np.float64)
    sw = np.sqrt(np.asarray(weights, dtype=np.float64).reshape(-1))

    P = ray_projectors(d) * sw[:, None, None]
    A = P.reshape(-1, 3)
    b = np.einsum("nij,nj->ni", P, o).reshape(-1)
    xyz, _res, _rank, sv = np.linalg.lstsq(A, b, rcond=None)
    return xyz, sv
