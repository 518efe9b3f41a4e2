# Data models
from .data_models import (
    ChallengeType,
    TurnDirection,
    SessionStatus,
    TERMINAL_STATUSES,
    ErrorKind,
    ChallengeDescriptor,
    ValidationResult,
    ChallengeState,
    ChallengeEntry,
    FaceObservation,
    SessionError,
    Session,
    EvidenceMetadata,
    EvidenceArtifact,
    SubmissionVerdict,
)

__all__ = [
    'ChallengeType', 'TurnDirection', 'SessionStatus', 'TERMINAL_STATUSES', 'ErrorKind',
    'ChallengeDescriptor', 'ValidationResult', 'ChallengeState', 'ChallengeEntry',
    'FaceObservation', 'SessionError', 'Session', 'EvidenceMetadata', 'EvidenceArtifact',
    'SubmissionVerdict',
]
