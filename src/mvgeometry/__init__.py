from mvgeometry.api import (
    JointReconstruction,
    load_cameras,
    parse_cameras,
    project_skeleton,
    save_cameras,
    serialize_cameras,
    triangulate_joints,
)
from mvgeometry.config import SolverConfig, load_solver_config, parse_solver_config
from mvgeometry.core.camera import CameraModel, parse_camera
from mvgeometry.core.triangulation import RayObservation, TriangulationResult, Triangulator, triangulate_rays
from mvgeometry.errors import (
    ConfigValidationError,
    DegenerateLookAt,
    GeometryError,
    IdenticalCameras,
    InsufficientObservations,
    MalformedCalibration,
    SingularIntrinsics,
    StaleCameraError,
    UnknownCamera,
)

__all__ = [
    "CameraModel",
    "parse_camera",
    "RayObservation",
    "TriangulationResult",
    "Triangulator",
    "triangulate_rays",
    "SolverConfig",
    "load_solver_config",
    "parse_solver_config",
    "load_cameras",
    "save_cameras",
    "parse_cameras",
    "serialize_cameras",
    "JointReconstruction",
    "triangulate_joints",
    "project_skeleton",
    "GeometryError",
    "MalformedCalibration",
    "SingularIntrinsics",
    "DegenerateLookAt",
    "IdenticalCameras",
    "InsufficientObservations",
    "StaleCameraError",
    "UnknownCamera",
    "ConfigValidationError",
]
