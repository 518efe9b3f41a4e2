"""
Exception taxonomy for the liveness capture engine
"""
from typing import Optional

from .models.data_models import ErrorKind


# User-facing messages, one per error kind
DEFAULT_MESSAGES = {
    ErrorKind.CAMERA: "Failed to access camera. Please enable camera permissions.",
    ErrorKind.DETECTOR: "Failed to initialize face detection",
    ErrorKind.TIMEOUT: (
        "Verification is taking too long. Your recording is saved on this device, "
        "please try submitting again."
    ),
    ErrorKind.REJECTED: "Verification was not approved",
    ErrorKind.SAVE: "Failed to save verification video",
    ErrorKind.SUBMISSION: "Failed to submit verification",
}


class LivenessError(Exception):
    """Base class for errors that end a verification attempt"""

    kind: ErrorKind = ErrorKind.DETECTOR

    def __init__(self, message: Optional[str] = None):
        self.message = message or DEFAULT_MESSAGES[self.kind]
        super().__init__(self.message)


class CameraError(LivenessError):
    """Media-capture device could not be acquired or read"""
    kind = ErrorKind.CAMERA


class DetectorError(LivenessError):
    """Landmark source could not be made ready"""
    kind = ErrorKind.DETECTOR


class EvidenceStoreError(LivenessError):
    """Local evidence persistence failed"""
    kind = ErrorKind.SAVE


class SubmissionError(LivenessError):
    """The verification endpoint could not be reached or answered unusably"""
    kind = ErrorKind.SUBMISSION


class InvalidTransitionError(RuntimeError):
    """A state change that the session state machine does not allow"""
