import numpy as np
import pytest

from mvgeometry.core.camera import CameraModel, parse_camera
from mvgeometry.errors import (
    DegenerateLookAt,
    IdenticalCameras,
    MalformedCalibration,
    SingularIntrinsics,
    StaleCameraError,
)


def _record(**overrides):
    rec = {
        "K": [800.0, 0.0, 320.0, 0.0, 820.0, 240.0, 0.0, 0.0, 1.0],
        "imgSize": [640, 480],
        "distCoeff": [0.01, -0.002, 0.0005, -0.0003, 0.0],
        "R": [1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0],
        "T": [0.1, -0.2, 3.0],
    }
    rec.update(overrides)
    return rec


def _look_at_camera(eye, center=(0.0, 0.0, 0.0), up=(0.0, 1.0, 0.0)):
    cam = CameraModel(
        K=[[1000.0, 0.0, 640.0], [0.0, 1000.0, 360.0], [0.0, 0.0, 1.0]],
        image_size=(1280, 720),
    )
    cam.look_at(np.asarray(eye, dtype=np.float64), np.asarray(center, dtype=np.float64), np.asarray(up, dtype=np.float64))
    cam.update()
    return cam


def test_parse_serialize_roundtrip_is_exact():
    rec = _record(
        R=[0.36, 0.48, -0.8, -0.8, 0.6, 0.0, 0.48, 0.64, 0.6],
        newK=[700.0, 0.0, 300.0, 0.0, 700.0, 230.0, 0.0, 0.0, 1.0],
        newImgSize=[600, 450],
        validPixROI=[4, 5, 590, 440],
        rectifyAlpha=0.5,
    )
    cam = parse_camera(rec)
    assert not cam.is_stale
    assert cam.serialize() == rec

    again = CameraModel.parse(cam.serialize())
    for name in ("K", "dist_coeffs", "R", "T", "new_K"):
        assert np.array_equal(getattr(again, name), getattr(cam, name))
    assert again.image_size == cam.image_size
    assert again.valid_pix_roi == cam.valid_pix_roi
    assert again.rectify_alpha == cam.rectify_alpha


def test_parse_accepts_nested_matrices_and_rotation_vector():
    rvec = np.array([0.1, -0.2, 0.3])
    cam = parse_camera(_record(K=[[800.0, 0.0, 320.0], [0.0, 820.0, 240.0], [0.0, 0.0, 1.0]], R=rvec.tolist()))
    assert np.allclose(cam.R.T @ cam.R, np.eye(3), atol=1e-12)
    assert np.isclose(np.linalg.det(cam.R), 1.0)
    angle = np.arccos((np.trace(cam.R) - 1.0) / 2.0)
    assert np.isclose(angle, np.linalg.norm(rvec))


def test_rotation_vector_record_serializes_in_canonical_form():
    rec = _record(R=[0.0, 0.0, np.pi / 2.0])
    out = parse_camera(rec).serialize()
    assert out != rec
    assert len(out["R"]) == 9
    assert np.allclose(np.reshape(out["R"], (3, 3)), [[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]], atol=1e-12)
    # The canonical record is a fixed point.
    assert parse_camera(out).serialize() == out


def test_parse_pads_four_distortion_coefficients():
    cam = parse_camera(_record(distCoeff=[0.1, 0.01, 0.0, 0.0]))
    assert cam.dist_coeffs.shape == (5,)
    assert cam.dist_coeffs[4] == 0.0


@pytest.mark.parametrize(
    "overrides",
    [
        {"K": None},
        {"K": [800.0, 0.0, 320.0, 0.0, 820.0, 240.0]},
        {"K": [800.0, 0.0, 320.0, 0.0, float("nan"), 240.0, 0.0, 0.0, 1.0]},
        {"K": [800.0, 0.0, 320.0, 0.0, 820.0, 240.0, 0.1, 0.0, 1.0]},
        {"imgSize": [640]},
        {"imgSize": [0, 480]},
        {"T": [0.0, 0.0]},
        {"T": [0.0, "x", 1.0]},
        {"R": [1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 2.0]},
        {"R": [1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, -1.0]},
        {"distCoeff": [0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0]},
        {"distCoeff": [0.0, float("inf"), 0.0, 0.0, 0.0]},
    ],
)
def test_parse_rejects_malformed_records(overrides):
    rec = _record(**overrides)
    rec = {k: v for k, v in rec.items() if v is not None}
    with pytest.raises(MalformedCalibration):
        parse_camera(rec)


def test_parse_rejects_non_mapping():
    with pytest.raises(MalformedCalibration):
        parse_camera([1, 2, 3])


def test_singular_intrinsics():
    with pytest.raises(SingularIntrinsics):
        parse_camera(_record(K=[0.0, 0.0, 320.0, 0.0, 820.0, 240.0, 0.0, 0.0, 1.0]))

    cam = parse_camera(_record())
    cam.K = [[-5.0, 0.0, 1.0], [0.0, 5.0, 1.0], [0.0, 0.0, 1.0]]
    with pytest.raises(SingularIntrinsics):
        cam.update()


def test_derived_fields_are_stale_until_update():
    cam = parse_camera(_record())
    cam.T = [0.0, 0.0, 5.0]
    assert cam.is_stale
    with pytest.raises(StaleCameraError):
        _ = cam.proj
    with pytest.raises(StaleCameraError):
        cam.calc_ray([0.5, 0.5])
    cam.update()
    assert np.allclose(cam.pos, [0.0, 0.0, -5.0])

    fresh = CameraModel()
    assert fresh.is_stale
    fresh.update()
    assert np.array_equal(fresh.proj[:, :3], np.eye(3))


def test_stored_arrays_are_read_only():
    cam = parse_camera(_record())
    with pytest.raises(ValueError):
        cam.K[0, 0] = 1.0
    with pytest.raises(ValueError):
        cam.pos[0] = 1.0


def test_update_is_deterministic():
    cam = parse_camera(_record(R=[0.36, 0.48, -0.8, -0.8, 0.6, 0.0, 0.48, 0.64, 0.6]))
    before = {n: getattr(cam, n).copy() for n in ("K_norm", "Ki", "Rt", "RtKi", "pos", "proj")}
    cam.update()
    cam.update()
    for name, value in before.items():
        assert np.array_equal(getattr(cam, name), value)


def test_derived_fields_definitions():
    cam = parse_camera(_record(R=[0.36, 0.48, -0.8, -0.8, 0.6, 0.0, 0.48, 0.64, 0.6]))
    w, h = cam.image_size
    assert np.allclose(cam.K_norm, np.diag([1.0 / w, 1.0 / h, 1.0]) @ cam.K)
    assert np.allclose(cam.Ki @ cam.K_norm, np.eye(3))
    assert np.allclose(cam.Rt, cam.R.T)
    assert np.allclose(cam.RtKi, cam.R.T @ cam.Ki)
    assert np.allclose(cam.pos, -cam.R.T @ cam.T)
    assert np.allclose(cam.proj, cam.K_norm @ np.column_stack([cam.R, cam.T]))


def test_projection_then_ray_passes_through_point():
    rng = np.random.default_rng(0)
    cam = _look_at_camera(eye=(2.0, 1.0, -6.0), center=(0.0, 0.5, 0.0))
    pts = rng.uniform(-1.0, 1.0, size=(200, 3))
    assert np.all(cam.depth(pts) > 0.0)

    uv = cam.project(pts)
    rays = cam.calc_ray(uv)
    assert rays.shape == (200, 3)
    d = rays / np.linalg.norm(rays, axis=1, keepdims=True)
    diff = pts - cam.pos
    perp = diff - np.sum(diff * d, axis=1, keepdims=True) * d
    assert np.max(np.linalg.norm(perp, axis=1)) < 1e-9
    # Ray points toward the scene, not behind the camera.
    assert np.all(np.sum(diff * d, axis=1) > 0.0)


def test_calc_ray_single_coordinate_and_bad_input():
    cam = parse_camera(_record())
    ray = cam.calc_ray(np.array([0.5, 0.5]))
    assert ray.shape == (3,)
    assert np.all(np.isfinite(ray)) and np.linalg.norm(ray) > 0.0
    with pytest.raises(ValueError):
        cam.calc_ray([np.nan, 0.5])


def test_look_at_places_camera_and_centers_target():
    eye = np.array([3.0, 2.0, -4.0])
    center = np.array([0.5, 0.0, 1.0])
    cam = _look_at_camera(eye=eye, center=center, up=(0.0, 0.0, 1.0))

    assert np.allclose(cam.pos, eye, atol=1e-12)
    assert np.isclose(np.linalg.det(cam.R), 1.0)
    assert np.allclose(cam.R @ cam.R.T, np.eye(3), atol=1e-12)

    c_cam = cam.R @ center + cam.T
    assert c_cam[2] > 0.0
    assert abs(c_cam[0]) < 1e-12 and abs(c_cam[1]) < 1e-12
    # Target lands on the principal point.
    cx, cy = cam.K[0, 2] / cam.image_size[0], cam.K[1, 2] / cam.image_size[1]
    assert np.allclose(cam.project(center), [cx, cy])


def test_look_at_up_is_image_up():
    cam = _look_at_camera(eye=(0.0, 0.0, -5.0), center=(0.0, 0.0, 0.0), up=(0.0, 1.0, 0.0))
    top = cam.project(np.array([0.0, 1.0, 0.0]))
    bottom = cam.project(np.array([0.0, -1.0, 0.0]))
    assert top[1] < bottom[1]


def test_look_at_leaves_camera_stale():
    cam = parse_camera(_record())
    cam.look_at(np.array([0.0, 0.0, -1.0]), np.zeros(3), np.array([0.0, 1.0, 0.0]))
    assert cam.is_stale


@pytest.mark.parametrize(
    "eye,center,up",
    [
        ((1.0, 1.0, 1.0), (1.0, 1.0, 1.0), (0.0, 1.0, 0.0)),
        ((0.0, 0.0, 0.0), (0.0, 5.0, 0.0), (0.0, 1.0, 0.0)),
        ((0.0, 0.0, 0.0), (0.0, 0.0, 1.0), (0.0, 0.0, 0.0)),
    ],
)
def test_look_at_degenerate(eye, center, up):
    cam = CameraModel()
    with pytest.raises(DegenerateLookAt):
        cam.look_at(np.asarray(eye), np.asarray(center), np.asarray(up))


def test_fundamental_epipolar_constraint():
    rng = np.random.default_rng(1)
    a = _look_at_camera(eye=(-3.0, 0.5, -5.0))
    b = _look_at_camera(eye=(4.0, 1.5, -4.0), up=(0.1, 1.0, 0.0))
    b.K = [[900.0, 0.0, 600.0], [0.0, 950.0, 350.0], [0.0, 0.0, 1.0]]
    b.update()

    F = a.calc_fundamental(b)
    assert F.shape == (3, 3)
    assert np.isclose(np.linalg.norm(F), 1.0)
    assert abs(np.linalg.det(F)) < 1e-9

    pts = rng.uniform(-1.0, 1.0, size=(50, 3))
    u = np.column_stack([a.project(pts), np.ones(50)])
    v = np.column_stack([b.project(pts), np.ones(50)])
    residual = np.einsum("ni,ij,nj->n", v, F, u)
    assert np.max(np.abs(residual)) < 1e-9

    # Reverse direction is the transpose (up to sign/scale).
    F_ba = b.calc_fundamental(a)
    assert np.allclose(np.abs(F_ba), np.abs(F.T), atol=1e-9)


def test_fundamental_identical_cameras():
    cam = _look_at_camera(eye=(1.0, 2.0, -5.0))
    with pytest.raises(IdenticalCameras):
        cam.calc_fundamental(cam.copy())

    rotated = _look_at_camera(eye=(1.0, 2.0, -5.0), center=(3.0, 0.0, 0.0))
    with pytest.raises(IdenticalCameras):
        cam.calc_fundamental(rotated)


def test_undistort_inverts_distort():
    cam = parse_camera(_record(distCoeff=[-0.2, 0.05, 0.001, -0.0015, 0.0]))
    rng = np.random.default_rng(2)
    uv = rng.uniform(0.1, 0.9, size=(100, 2))
    back = cam.undistort_uv(cam.distort_uv(uv))
    assert np.max(np.abs(back - uv)) < 1e-8


def test_pixel_uv_conversion_and_observe():
    cam = parse_camera(_record())
    px = np.array([320.0, 240.0])
    uv = cam.pixel_to_uv(px)
    assert np.allclose(uv, [0.5, 0.5])
    assert np.allclose(cam.uv_to_pixel(uv), px)

    obs = cam.observe(uv, weight=0.7)
    assert np.allclose(obs.origin, cam.pos)
    assert np.isclose(np.linalg.norm(obs.direction), 1.0)
    assert obs.weight == 0.7
    assert np.array_equal(obs.proj, cam.proj)


def test_copy_is_independent():
    cam = parse_camera(_record())
    dup = cam.copy()
    dup.T = [5.0, 5.0, 5.0]
    assert dup.is_stale
    assert not cam.is_stale
    assert np.array_equal(cam.T, [0.1, -0.2, 3.0])
