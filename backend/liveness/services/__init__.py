# Service layer components
from .capture_device import CaptureDevice, OpenCVCaptureDevice, acquired
from .landmark_source import LandmarkSource, MediaPipeLandmarkSource
from .challenge_engine import ChallengeEngine
from .challenge_validator import ChallengeValidator, LandmarkIndices
from .recorder import Recorder
from .detection_loop import DetectionLoop, DetectionCycle
from .retry_policy import RetryPolicy
from .evidence_store import EvidenceStore
from .submission_client import SubmissionClient
from .session_manager import SessionManager

__all__ = ['CaptureDevice', 'OpenCVCaptureDevice', 'acquired', 'LandmarkSource', 'MediaPipeLandmarkSource', 'ChallengeEngine', 'ChallengeValidator', 'LandmarkIndices', 'Recorder', 'DetectionLoop', 'DetectionCycle', 'RetryPolicy', 'EvidenceStore', 'SubmissionClient', 'SessionManager']
