from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import numpy as np

from mvgeometry.api.calibration_io import load_cameras
from mvgeometry.api.reconstruction import triangulate_joints
from mvgeometry.config import SolverConfig, load_solver_config
from mvgeometry.errors import GeometryError, UnknownCamera


def _validate_calibration(path: Path) -> None:
    cameras = load_cameras(path)
    for cam_id in sorted(cameras):
        cam = cameras[cam_id]
        entry = {"camera": cam_id, "pos": cam.pos.tolist(), "image_size": list(cam.image_size)}
        print(json.dumps(entry, sort_keys=True))


def _fundamental(path: Path, cam_a: str, cam_b: str) -> dict[str, Any]:
    cameras = load_cameras(path)
    for cam_id in (cam_a, cam_b):
        if cam_id not in cameras:
            raise UnknownCamera(f"unknown camera {cam_id!r}")
    F = cameras[cam_a].calc_fundamental(cameras[cam_b])
    return {"from": cam_a, "to": cam_b, "coordinates": "normalized", "F": F.tolist()}


def _triangulate(calibration: Path, observations: Path, config: SolverConfig) -> dict[str, Any]:
    cameras = load_cameras(calibration)
    doc = json.loads(observations.read_text(encoding="utf-8"))
    points = doc.get("points") if isinstance(doc, dict) else None
    if not isinstance(points, list):
        raise ValueError(f"{observations}: expected an object with a 'points' list")

    out: list[dict[str, Any]] = []
    for i, entry in enumerate(points):
        name = str(entry.get("name", i))
        detections = {
            str(cam_id): np.asarray(uv, dtype=np.float64).reshape(1, -1) for cam_id, uv in entry.get("views", {}).items()
        }
        rec = triangulate_joints(cameras, detections, config)
        res = rec.results[0] if rec.results else None
        out.append(
            {
                "name": name,
                "valid": bool(rec.valid[0]) if rec.results else False,
                "pos": None if res is None else res.pos.tolist(),
                "convergent": None if res is None else res.convergent,
                "loss": None if res is None else res.loss,
                "n_views": 0 if res is None else res.n_views,
            }
        )
    return {"schema_version": "mvgeometry.points.v0", "solver": config.to_dict(), "points": out}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="mvgeometry")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    val = sub.add_parser("validate-calibration", help="Load a calibration document and print each camera center.")
    val.add_argument("calibration", type=Path)

    fun = sub.add_parser(
        "fundamental",
        help="Fundamental matrix between two cameras (normalized image coordinates).",
    )
    fun.add_argument("calibration", type=Path)
    fun.add_argument("cam_a")
    fun.add_argument("cam_b")
    fun.add_argument("--out", type=Path, default=None)

    tri = sub.add_parser("triangulate", help="Triangulate named points observed in several cameras (pixel coords).")
    tri.add_argument("calibration", type=Path)
    tri.add_argument("observations", type=Path)
    tri.add_argument("--config", type=Path, default=None, help="Solver config JSON (mvgeometry.solver.v0).")
    tri.add_argument("--out", type=Path, default=None)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        return _run(args)
    except GeometryError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


def _run(args: argparse.Namespace) -> int:
    if args.cmd == "validate-calibration":
        _validate_calibration(args.calibration)
        return 0

    if args.cmd == "fundamental":
        result = _fundamental(args.calibration, args.cam_a, args.cam_b)
        if args.out is None:
            print(json.dumps(result, indent=2))
        else:
            args.out.write_text(json.dumps(result, indent=2), encoding="utf-8")
            print(f"Wrote {args.out}")
        return 0

    if args.cmd == "triangulate":
        config = SolverConfig() if args.config is None else load_solver_config(args.config)
        result = _triangulate(args.calibration, args.observations, config)
        if args.out is None:
            print(json.dumps(result, indent=2, sort_keys=True))
        else:
            args.out.parent.mkdir(parents=True, exist_ok=True)
            args.out.write_text(json.dumps(result, indent=2, sort_keys=True), encoding="utf-8")
            print(f"Wrote {args.out}")
        return 0

    raise AssertionError(f"Unhandled cmd: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
