from __future__ import annotations


class GeometryError(ValueError):
    """Base class for every failure raised by mvgeometry."""


class MalformedCalibration(GeometryError):
    pass


class SingularIntrinsics(GeometryError):
    pass


class DegenerateLookAt(GeometryError):
    pass


class IdenticalCameras(GeometryError):
    pass


class InsufficientObservations(GeometryError):
    pass


class StaleCameraError(GeometryError):
    """A derived camera field was read after a primary-field change without `update()`."""


class ConfigValidationError(GeometryError):
    pass


class UnknownCamera(GeometryError, KeyError):
    """A camera id that is not part of the loaded calibration."""
