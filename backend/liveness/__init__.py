"""
Client-side liveness verification: randomized facial challenges, continuous
recording, local evidence persistence and submission.
"""
from .config import Settings
from .errors import LivenessError, CameraError, DetectorError, EvidenceStoreError, SubmissionError
from .services.session_manager import SessionManager

__version__ = "1.0.0"

__all__ = ['Settings', 'LivenessError', 'CameraError', 'DetectorError', 'EvidenceStoreError', 'SubmissionError', 'SessionManager']
