from mvgeometry.api.calibration_io import load_cameras, parse_cameras, save_cameras, serialize_cameras
from mvgeometry.api.reconstruction import JointReconstruction, project_skeleton, triangulate_joints

__all__ = [
    "load_cameras",
    "save_cameras",
    "parse_cameras",
    "serialize_cameras",
    "JointReconstruction",
    "triangulate_joints",
    "project_skeleton",
]
