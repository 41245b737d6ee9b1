from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import numpy as np

from mvgeometry.core.distortion import BrownDistortion, dist_coeffs_vector
from mvgeometry.core.geometry import homogeneous, hnormalized, normalize, pixel_to_uv, skew, uv_to_pixel
from mvgeometry.core.triangulation import RayObservation
from mvgeometry.errors import (
    DegenerateLookAt,
    IdenticalCameras,
    MalformedCalibration,
    SingularIntrinsics,
    StaleCameraError,
)

ORTHONORMAL_TOL = 1e-3
LOOKAT_EPS = 1e-9
BASELINE_EPS = 1e-9


def _readonly(x: Any, shape: tuple[int, ...]) -> np.ndarray:
    a = np.array(x, dtype=np.float64).reshape(shape)
    a.setflags(write=False)
    return a


def _size_pair(x: Any) -> tuple[int, int]:
    w, h = (int(v) for v in x)
    return w, h


@dataclass(frozen=True)
class _Derived:
    K_norm: np.ndarray
    Ki: np.ndarray
    Rt: np.ndarray
    RtKi: np.ndarray
    pos: np.ndarray
    proj: np.ndarray


class CameraModel:
    """
    One calibrated pinhole camera.

    Primary fields (`K` in pixels, `image_size`, `dist_coeffs`, `R`, `T` and the
    optional rectification fields) are stored; derived fields (`K_norm`, `Ki`,
    `Rt`, `RtKi`, `pos`, `proj`) are computed by `update()` and work in
    normalized image coordinates (u = x_px / width, v = y_px / height).

    Pose convention: X_cam = R X_world + T, hence the optical center is
    pos = -R^T T.

    Any primary-field assignment (and `look_at`) marks the camera stale; reading a
    derived field before the next `update()` raises `StaleCameraError`. Stored
    arrays are read-only, so fields must be replaced, never edited in place.
    """

    def __init__(
        self,
        K: np.ndarray | None = None,
        image_size: tuple[int, int] = (1, 1),
        dist_coeffs: np.ndarray | None = None,
        R: np.ndarray | None = None,
        T: np.ndarray | None = None,
        *,
        new_K: np.ndarray | None = None,
        new_image_size: tuple[int, int] | None = None,
        valid_pix_roi: tuple[int, int, int, int] | None = None,
        rectify_alpha: float | None = None,
    ) -> None:
        self._derived: _Derived | None = None
        self.K = np.eye(3) if K is None else K
        self.image_size = image_size
        self.dist_coeffs = np.zeros((5,)) if dist_coeffs is None else dist_coeffs
        self.R = np.eye(3) if R is None else R
        self.T = np.zeros((3,)) if T is None else T
        self.new_K = new_K
        self.new_image_size = new_image_size
        self.valid_pix_roi = valid_pix_roi
        self.rectify_alpha = rectify_alpha

    def __repr__(self) -> str:
        state = "stale" if self.is_stale else "ready"
        w, h = self._image_size
        return f"CameraModel(image_size=({w}, {h}), T={self._T.tolist()}, {state})"

    # -- primary fields -------------------------------------------------------------

    def _invalidate(self) -> None:
        self._derived = None

    @property
    def K(self) -> np.ndarray:
        return self._K

    @K.setter
    def K(self, value: np.ndarray) -> None:
        self._K = _readonly(value, (3, 3))
        self._invalidate()

    @property
    def image_size(self) -> tuple[int, int]:
        return self._image_size

    @image_size.setter
    def image_size(self, value: tuple[int, int]) -> None:
        self._image_size = _size_pair(value)
        self._invalidate()

    @property
    def dist_coeffs(self) -> np.ndarray:
        return self._dist_coeffs

    @dist_coeffs.setter
    def dist_coeffs(self, value: np.ndarray) -> None:
        c = dist_coeffs_vector(value)
        c.setflags(write=False)
        self._dist_coeffs = c
        self._invalidate()

    @property
    def R(self) -> np.ndarray:
        return self._R

    @R.setter
    def R(self, value: np.ndarray) -> None:
        self._R = _readonly(value, (3, 3))
        self._invalidate()

    @property
    def T(self) -> np.ndarray:
        return self._T

    @T.setter
    def T(self, value: np.ndarray) -> None:
        self._T = _readonly(value, (3,))
        self._invalidate()

    # Rectification fields are opaque to the projective model; they are kept so that
    # an undistort/rectify pass (see mvgeometry.rectify) can round-trip them.

    @property
    def new_K(self) -> np.ndarray | None:
        return self._new_K

    @new_K.setter
    def new_K(self, value: np.ndarray | None) -> None:
        self._new_K = None if value is None else _readonly(value, (3, 3))
        self._invalidate()

    @property
    def new_image_size(self) -> tuple[int, int] | None:
        return self._new_image_size

    @new_image_size.setter
    def new_image_size(self, value: tuple[int, int] | None) -> None:
        self._new_image_size = None if value is None else _size_pair(value)
        self._invalidate()

    @property
    def valid_pix_roi(self) -> tuple[int, int, int, int] | None:
        return self._valid_pix_roi

    @valid_pix_roi.setter
    def valid_pix_roi(self, value: tuple[int, int, int, int] | None) -> None:
        if value is None:
            self._valid_pix_roi = None
        else:
            x, y, w, h = (int(v) for v in value)
            self._valid_pix_roi = (x, y, w, h)
        self._invalidate()

    @property
    def rectify_alpha(self) -> float | None:
        return self._rectify_alpha

    @rectify_alpha.setter
    def rectify_alpha(self, value: float | None) -> None:
        self._rectify_alpha = None if value is None else float(value)
        self._invalidate()

    @property
    def distortion(self) -> BrownDistortion:
        return BrownDistortion.from_coeffs(self._dist_coeffs)

    # -- derived fields -------------------------------------------------------------

    @property
    def is_stale(self) -> bool:
        return self._derived is None

    def _require_derived(self) -> _Derived:
        if self._derived is None:
            raise StaleCameraError("camera primary fields changed; call update() before using derived fields")
        return self._derived

    @property
    def K_norm(self) -> np.ndarray:
        return self._require_derived().K_norm

    @property
    def Ki(self) -> np.ndarray:
        return self._require_derived().Ki

    @property
    def Rt(self) -> np.ndarray:
        return self._require_derived().Rt

    @property
    def RtKi(self) -> np.ndarray:
        return self._require_derived().RtKi

    @property
    def pos(self) -> np.ndarray:
        return self._require_derived().pos

    @property
    def proj(self) -> np.ndarray:
        return self._require_derived().proj

    def update(self) -> None:
        """
        Recompute every derived field from the primary fields.

        Pure and idempotent. Raises `SingularIntrinsics` when `K` cannot be inverted
        (non-finite entries, non-positive focal lengths, zero determinant).
        """
        K = self._K
        w, h = self._image_size
        if not np.all(np.isfinite(K)):
            raise SingularIntrinsics("K has non-finite entries")
        if K[0, 0] <= 0.0 or K[1, 1] <= 0.0:
            raise SingularIntrinsics(f"focal lengths must be > 0, got fx={K[0, 0]}, fy={K[1, 1]}")
        if w <= 0 or h <= 0:
            raise SingularIntrinsics(f"image size must be > 0, got {(w, h)}")
        if abs(float(np.linalg.det(K))) < 1e-12:
            raise SingularIntrinsics("K is not invertible")

        K_norm = np.diag([1.0 / w, 1.0 / h, 1.0]) @ K
        Ki = np.linalg.inv(K_norm)
        Rt = self._R.T.copy()
        RtKi = Rt @ Ki
        pos = -Rt @ self._T
        proj = K_norm @ np.concatenate([self._R, self._T.reshape(3, 1)], axis=1)

        self._derived = _Derived(
            K_norm=_readonly(K_norm, (3, 3)),
            Ki=_readonly(Ki, (3, 3)),
            Rt=_readonly(Rt, (3, 3)),
            RtKi=_readonly(RtKi, (3, 3)),
            pos=_readonly(pos, (3,)),
            proj=_readonly(proj, (3, 4)),
        )

    # -- record I/O -----------------------------------------------------------------

    @classmethod
    def parse(cls, record: Mapping[str, Any]) -> "CameraModel":
        """
        Build a camera from a calibration record and `update()` it.

        Raises `MalformedCalibration` on missing, mis-shaped or non-finite fields and
        `SingularIntrinsics` on a non-invertible intrinsic matrix.
        """
        if not isinstance(record, Mapping):
            raise MalformedCalibration("calibration record must be a JSON object")

        K = _parse_matrix3(record, "K")
        _require(
            K[1, 0] == 0.0 and K[2, 0] == 0.0 and K[2, 1] == 0.0,
            "K must be upper-triangular",
        )
        image_size = _parse_size(record, "imgSize")
        dist = _parse_dist(record)
        R = _parse_rotation(record)
        T = _parse_vector(record, "T", 3)

        new_K = _parse_matrix3(record, "newK") if "newK" in record else None
        new_size = _parse_size(record, "newImgSize") if "newImgSize" in record else None
        roi = None
        if "validPixROI" in record:
            roi_vec = _parse_vector(record, "validPixROI", 4)
            _require(np.all(roi_vec == np.round(roi_vec)), "validPixROI must hold integers")
            roi = tuple(int(v) for v in roi_vec)
        alpha = None
        if "rectifyAlpha" in record:
            alpha = float(_parse_vector(record, "rectifyAlpha", 1)[0])

        cam = cls(
            K=K,
            image_size=image_size,
            dist_coeffs=dist,
            R=R,
            T=T,
            new_K=new_K,
            new_image_size=new_size,
            valid_pix_roi=roi,
            rectify_alpha=alpha,
        )
        cam.update()
        return cam

    def serialize(self) -> dict[str, Any]:
        """
        Primary fields as a JSON-ready record in canonical form (flat row-major matrices).

        `R` is always written as 9 matrix values and `distCoeff` as 5 coefficients, so
        `serialize(parse(r)) == r` holds only for records already in canonical form; a
        rotation-vector `R` or a 4-coefficient `distCoeff` comes back in canonical form.
        """
        record: dict[str, Any] = {
            "K": self._K.reshape(-1).tolist(),
            "imgSize": list(self._image_size),
            "distCoeff": self._dist_coeffs.tolist(),
            "R": self._R.reshape(-1).tolist(),
            "T": self._T.tolist(),
        }
        if self._new_K is not None:
            record["newK"] = self._new_K.reshape(-1).tolist()
        if self._new_image_size is not None:
            record["newImgSize"] = list(self._new_image_size)
        if self._valid_pix_roi is not None:
            record["validPixROI"] = list(self._valid_pix_roi)
        if self._rectify_alpha is not None:
            record["rectifyAlpha"] = self._rectify_alpha
        return record

    def copy(self) -> "CameraModel":
        cam = CameraModel(
            K=self._K,
            image_size=self._image_size,
            dist_coeffs=self._dist_coeffs,
            R=self._R,
            T=self._T,
            new_K=self._new_K,
            new_image_size=self._new_image_size,
            valid_pix_roi=self._valid_pix_roi,
            rectify_alpha=self._rectify_alpha,
        )
        if not self.is_stale:
            cam.update()
        return cam

    # -- pose -----------------------------------------------------------------------

    def look_at(self, eye: np.ndarray, center: np.ndarray, up: np.ndarray) -> None:
        """
        Place the camera at `eye` looking toward `center`, `up` fixing the roll.

        Rows of R are (right, down, forward) in world axes, with
        forward = normalize(center - eye), right = normalize(forward x up) and
        down = forward x right; T = -R eye. The camera is left stale: call
        `update()` afterwards.
        """
        eye = np.asarray(eye, dtype=np.float64).reshape(3)
        center = np.asarray(center, dtype=np.float64).reshape(3)
        up = np.asarray(up, dtype=np.float64).reshape(3)

        forward = center - eye
        if np.linalg.norm(forward) < LOOKAT_EPS:
            raise DegenerateLookAt("eye and center coincide")
        forward = normalize(forward)
        if np.linalg.norm(up) < LOOKAT_EPS:
            raise DegenerateLookAt("up vector has zero length")
        right = np.cross(forward, normalize(up))
        if np.linalg.norm(right) < LOOKAT_EPS:
            raise DegenerateLookAt("viewing direction is parallel to up")
        right = normalize(right)
        down = np.cross(forward, right)

        R = np.stack([right, down, forward], axis=0)
        self.R = R
        self.T = -R @ eye

    # -- queries --------------------------------------------------------------------

    def calc_fundamental(self, other: "CameraModel") -> np.ndarray:
        """
        Fundamental matrix F (3,3) with v^T F u = 0 for u in this image and v in `other`'s.

        Both images use normalized image coordinates. F is scaled to unit
        Frobenius norm. Raises `IdenticalCameras` for a zero baseline.
        """
        R_rel = other.R @ self.R.T
        t = other.T - R_rel @ self.T
        scale = max(1.0, float(np.linalg.norm(self.pos)), float(np.linalg.norm(other.pos)))
        if float(np.linalg.norm(t)) <= BASELINE_EPS * scale:
            raise IdenticalCameras("cameras share the same optical center; epipolar geometry is undefined")

        E = skew(t) @ R_rel
        F = other.Ki.T @ E @ self.Ki
        return F / np.linalg.norm(F)

    def calc_ray(self, uv: np.ndarray) -> np.ndarray:
        """
        World-frame direction(s) of the ray through normalized image coordinate(s) `uv`.

        Accepts (2,) or (N,2); the ray starts at `pos`. Directions are not normalized.
        """
        uv = np.asarray(uv, dtype=np.float64)
        single = uv.ndim == 1
        uv2 = uv.reshape(-1, 2)
        if not np.all(np.isfinite(uv2)):
            raise ValueError("non-finite image coordinates")
        rays = homogeneous(uv2) @ self.RtKi.T
        return rays[0] if single else rays

    def project(self, points: np.ndarray) -> np.ndarray:
        """World points (3,) or (N,3) -> normalized image coordinates; NaN at zero depth."""
        pts = np.asarray(points, dtype=np.float64)
        single = pts.ndim == 1
        uv = hnormalized(homogeneous(pts.reshape(-1, 3)) @ self.proj.T)
        return uv[0] if single else uv

    def depth(self, points: np.ndarray) -> np.ndarray:
        """Camera-frame Z of world points (positive in front of the camera)."""
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return (pts @ self._R.T + self._T.reshape(1, 3))[:, 2]

    def pixel_to_uv(self, uv_px: np.ndarray) -> np.ndarray:
        return pixel_to_uv(uv_px, self._image_size)

    def uv_to_pixel(self, uv: np.ndarray) -> np.ndarray:
        return uv_to_pixel(uv, self._image_size)

    def undistort_uv(self, uv: np.ndarray) -> np.ndarray:
        """
        Remove lens distortion from observed normalized image coordinates.

        The result is what an ideal pinhole with the same `K` would have observed.
        """
        uv = np.asarray(uv, dtype=np.float64)
        dist = self.distortion
        if dist.is_identity:
            return uv.copy()
        xy = hnormalized(homogeneous(uv.reshape(-1, 2)) @ self.Ki.T)
        out = hnormalized(homogeneous(dist.undistort(xy)) @ self.K_norm.T)
        return out.reshape(uv.shape)

    def distort_uv(self, uv: np.ndarray) -> np.ndarray:
        """Apply lens distortion to ideal normalized image coordinates (inverse of `undistort_uv`)."""
        uv = np.asarray(uv, dtype=np.float64)
        dist = self.distortion
        if dist.is_identity:
            return uv.copy()
        xy = hnormalized(homogeneous(uv.reshape(-1, 2)) @ self.Ki.T)
        out = hnormalized(homogeneous(dist.distort(xy)) @ self.K_norm.T)
        return out.reshape(uv.shape)

    def observe(self, uv: np.ndarray, weight: float = 1.0) -> RayObservation:
        """Back-project one (undistorted) normalized image coordinate into a triangulation input."""
        uv = np.asarray(uv, dtype=np.float64).reshape(2)
        return RayObservation(
            origin=self.pos,
            direction=normalize(self.calc_ray(uv)),
            weight=float(weight),
            proj=self.proj,
            uv=uv,
        )


def parse_camera(record: Mapping[str, Any]) -> CameraModel:
    return CameraModel.parse(record)


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise MalformedCalibration(msg)


def _finite_array(record: Mapping[str, Any], key: str) -> np.ndarray:
    _require(key in record and record[key] is not None, f"{key} is required")
    try:
        a = np.asarray(record[key], dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise MalformedCalibration(f"{key} must be numeric: {e}") from e
    _require(bool(np.all(np.isfinite(a))), f"{key} has non-finite values")
    return a


def _parse_matrix3(record: Mapping[str, Any], key: str) -> np.ndarray:
    a = _finite_array(record, key)
    _require(a.size == 9 and a.ndim in (1, 2), f"{key} must be a 3x3 matrix (9 values)")
    if a.ndim == 2:
        _require(a.shape == (3, 3), f"{key} must be a 3x3 matrix")
    return a.reshape(3, 3)


def _parse_vector(record: Mapping[str, Any], key: str, n: int) -> np.ndarray:
    a = _finite_array(record, key).reshape(-1)
    _require(a.size == n, f"{key} must have {n} values, got {a.size}")
    return a


def _parse_size(record: Mapping[str, Any], key: str) -> tuple[int, int]:
    a = _parse_vector(record, key, 2)
    _require(bool(np.all(a == np.round(a))), f"{key} must hold integers")
    w, h = int(a[0]), int(a[1])
    _require(w > 0 and h > 0, f"{key} must be > 0")
    return w, h


def _parse_dist(record: Mapping[str, Any]) -> np.ndarray:
    if "distCoeff" not in record:
        return np.zeros((5,), dtype=np.float64)
    a = _finite_array(record, "distCoeff")
    try:
        return dist_coeffs_vector(a)
    except ValueError as e:
        raise MalformedCalibration(f"distCoeff: {e}") from e


def _parse_rotation(record: Mapping[str, Any]) -> np.ndarray:
    a = _finite_array(record, "R")
    if a.size == 3 and a.ndim == 1:
        from scipy.spatial.transform import Rotation  # type: ignore

        R = Rotation.from_rotvec(a).as_matrix()
    else:
        R = _parse_matrix3(record, "R")
    ortho_err = float(np.max(np.abs(R.T @ R - np.eye(3))))
    _require(ortho_err < ORTHONORMAL_TOL, f"R is not orthonormal (max |R^T R - I| = {ortho_err:.3g})")
    _require(float(np.linalg.det(R)) > 0.0, "R must be a proper rotation (det = +1)")
    return R
