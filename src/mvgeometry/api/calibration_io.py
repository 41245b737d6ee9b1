from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from mvgeometry.core.camera import CameraModel
from mvgeometry.errors import MalformedCalibration, SingularIntrinsics

log = logging.getLogger(__name__)


def parse_cameras(data: Any) -> dict[str, CameraModel]:
    """
    Parse a whole calibration document {camera_id: record}.

    All-or-nothing: the first bad record fails the whole collection with
    `MalformedCalibration` naming the camera.
    """
    if not isinstance(data, Mapping):
        raise MalformedCalibration("calibration document must be a JSON object keyed by camera id")

    cameras: dict[str, CameraModel] = {}
    for cam_id, record in data.items():
        try:
            cameras[str(cam_id)] = CameraModel.parse(record)
        except (MalformedCalibration, SingularIntrinsics) as e:
            raise MalformedCalibration(f"camera {cam_id!r}: {e}") from e
    log.debug("parsed %d cameras", len(cameras))
    return cameras


def serialize_cameras(cameras: Mapping[str, CameraModel]) -> dict[str, Any]:
    return {str(cam_id): cam.serialize() for cam_id, cam in cameras.items()}


def load_cameras(path: Path) -> dict[str, CameraModel]:
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise MalformedCalibration(f"{path}: invalid JSON: {e}") from e
    cameras = parse_cameras(data)
    log.debug("loaded %d cameras from %s", len(cameras), path)
    return cameras


def save_cameras(cameras: Mapping[str, CameraModel], path: Path) -> Path:
    """
    Write the collection as a single JSON document (primary fields only).

    Float values are written with full precision so that a reload is bit-exact.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(serialize_cameras(cameras), indent=2, sort_keys=True), encoding="utf-8")
    return path
