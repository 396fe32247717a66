"""Exception hierarchy for the binding pipeline.

Every error carries a stable numeric ``error_id`` that is appended to its
message as ``[ErrorID n]`` so operators can triage diagnostic records
without parsing free text.
"""

from typing import Optional


class SplatRigError(Exception):
    """Base class for all pipeline errors."""

    error_id: Optional[int] = None

    def __init__(self, message: str):
        self.detail = message
        if self.error_id is not None:
            message = f"{message} [ErrorID {self.error_id}]"
        super().__init__(message)


class PoseDetectionFailure(SplatRigError):
    """The pose oracle returned no keypoints for a required view."""
    error_id = 1


class DirectionNotFound(SplatRigError):
    """No camera angle produced a usable facing-direction score."""
    error_id = 2


class GroundPenetrationFailure(SplatRigError):
    """Detected knees sit below the computed floor plane."""
    error_id = 3

    def __init__(self, message: str, knee_height: float):
        self.knee_height = knee_height
        super().__init__(message)


class PoseValidationFailure(SplatRigError):
    """The A-pose check failed (wrists bent inside the shoulders)."""
    error_id = 4


class EmptyRegionFailure(SplatRigError):
    """A height band or region required for a centroid has no points."""
    error_id = 5


class CalibrationFailure(SplatRigError):
    """Floor/ceiling search did not converge within the radius cap."""
    error_id = 6

    def __init__(self, message: str, radii_tried: Optional[list[float]] = None):
        self.radii_tried = list(radii_tried or [])
        super().__init__(message)


class AssetLoadFailure(SplatRigError):
    """A mesh or point-cloud asset could not be parsed."""
    error_id = 7


class BindingStateError(SplatRigError):
    """Deformer used before binding, or bound twice."""
    error_id = 8


class ArchiveFormatError(SplatRigError):
    """Archive is missing entries or its binding arrays are misaligned."""
    error_id = 9
