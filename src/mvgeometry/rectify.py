"""
Undistort/rectify support for the camera's opaque rectification fields.

The projective model never reads `new_K`, `new_image_size`, `valid_pix_roi` or
`rectify_alpha`; this module fills them from OpenCV and builds the dense remap
LUTs (mapx/mapy) that warp a raw frame into the undistorted image.

Notes
-----
- `rectify_alpha` follows `cv2.getOptimalNewCameraMatrix`: 0 keeps only valid
  pixels, 1 keeps every source pixel.
- Maps are expensive to build; compute them once per camera and reuse them.
"""
from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from mvgeometry.core.camera import CameraModel


@dataclass(frozen=True)
class Rectification:
    new_K: np.ndarray  # (3,3) pixel intrinsic of the undistorted image
    new_image_size: tuple[int, int]
    valid_pix_roi: tuple[int, int, int, int]


def compute_rectification(camera: CameraModel) -> Rectification:
    alpha = 0.0 if camera.rectify_alpha is None else float(camera.rectify_alpha)
    new_size = camera.image_size if camera.new_image_size is None else camera.new_image_size
    new_K, roi = cv2.getOptimalNewCameraMatrix(
        np.asarray(camera.K, dtype=np.float64),
        np.asarray(camera.dist_coeffs, dtype=np.float64),
        tuple(int(v) for v in camera.image_size),
        alpha,
        tuple(int(v) for v in new_size),
    )
    x, y, w, h = (int(v) for v in roi)
    return Rectification(
        new_K=np.asarray(new_K, dtype=np.float64).reshape(3, 3),
        new_image_size=(int(new_size[0]), int(new_size[1])),
        valid_pix_roi=(x, y, w, h),
    )


def apply_rectification(camera: CameraModel) -> Rectification:
    """
    Store the rectification in `camera`'s opaque fields.

    This assigns primary fields, so the camera is stale afterwards: call `update()`.
    """
    rect = compute_rectification(camera)
    camera.new_K = rect.new_K
    camera.new_image_size = rect.new_image_size
    camera.valid_pix_roi = rect.valid_pix_roi
    return rect


def undistort_rectify_maps(camera: CameraModel) -> tuple[np.ndarray, np.ndarray]:
    """
    Dense float32 (H',W') maps sending undistorted pixels to raw-image pixels.

    Uses the camera's `new_K`/`new_image_size` when set, otherwise computes them.
    """
    if camera.new_K is None:
        rect = compute_rectification(camera)
        new_K, new_size = rect.new_K, rect.new_image_size
    else:
        new_K = camera.new_K
        new_size = camera.image_size if camera.new_image_size is None else camera.new_image_size
    mapx, mapy = cv2.initUndistortRectifyMap(
        np.asarray(camera.K, dtype=np.float64),
        np.asarray(camera.dist_coeffs, dtype=np.float64),
        None,
        np.asarray(new_K, dtype=np.float64),
        tuple(int(v) for v in new_size),
        cv2.CV_32FC1,
    )
    return mapx, mapy


def remap_image(
    image: np.ndarray,
    maps: tuple[np.ndarray, np.ndarray],
    interpolation: int = cv2.INTER_LINEAR,
    border_value: float = 0.0,
) -> np.ndarray:
    mapx, mapy = maps
    return cv2.remap(
        image,
        mapx,
        mapy,
        interpolation=interpolation,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=border_value,
    )
