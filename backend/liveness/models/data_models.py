"""
Data models for the liveness capture engine
"""
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np


class ChallengeType(str, Enum):
    HEAD_TURN = "head_turn"
    BLINK = "blink"
    SMILE = "smile"
    HEAD_NOD = "head_nod"


class TurnDirection(str, Enum):
    LEFT = "left"
    RIGHT = "right"


class SessionStatus(str, Enum):
    INTRO = "intro"
    INITIALIZING = "initializing"
    DETECTING = "detecting"
    RECORDING = "recording"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({SessionStatus.SUCCESS, SessionStatus.ERROR})


class ErrorKind(str, Enum):
    CAMERA = "camera"
    DETECTOR = "detector"
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    SAVE = "save"
    SUBMISSION = "submission"


@dataclass(frozen=True)
class ChallengeDescriptor:
    """A single physical action the user is asked to perform. Immutable once generated."""
    type: ChallengeType
    instruction_text: str
    direction: Optional[TurnDirection] = None
    repeat_count: Optional[int] = None

    @property
    def kind(self) -> str:
        if self.direction is not None:
            return f"{self.type.value}-{self.direction.value}"
        return self.type.value

    @property
    def family(self) -> ChallengeType:
        return self.type

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "instruction": self.instruction_text,
            "direction": self.direction.value if self.direction is not None else None,
            "count": self.repeat_count,
        }


@dataclass
class ValidationResult:
    """Output of one validator call for one frame"""
    passed: bool
    confidence: float


@dataclass
class ChallengeState:
    """Mutable progress of one challenge, owned by the session"""
    completed: bool = False
    progress: float = 0.0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def record(self, result: ValidationResult, at: float) -> bool:
        """
        Apply a validator result to this challenge.

        Completion locks in on the first passing frame; later frames only
        update progress. Returns True exactly once, on the completing frame.
        """
        self.progress = float(min(1.0, max(0.0, result.confidence)))
        if self.completed:
            return False
        if result.passed:
            self.completed = True
            self.completed_at = at
            return True
        return False


@dataclass
class ChallengeEntry:
    descriptor: ChallengeDescriptor
    state: ChallengeState = field(default_factory=ChallengeState)

    def to_summary(self) -> Dict[str, Any]:
        summary = self.descriptor.to_dict()
        summary.update({
            "completed": self.state.completed,
            "progress": self.state.progress,
            "started_at": self.state.started_at,
            "completed_at": self.state.completed_at,
        })
        return summary


@dataclass
class FaceObservation:
    """What a landmark source saw in one frame: at most one face"""
    landmarks: Optional[np.ndarray] = None
    confidence: float = 0.0

    @property
    def has_face(self) -> bool:
        return self.landmarks is not None

    @classmethod
    def empty(cls) -> "FaceObservation":
        return cls(landmarks=None, confidence=0.0)


@dataclass
class SessionError:
    kind: ErrorKind
    message: str
    can_resubmit: bool = False


@dataclass
class Session:
    """Aggregate root for one verification attempt"""
    session_id: str
    created_at: float
    status: SessionStatus = SessionStatus.INTRO
    challenges: List[ChallengeEntry] = field(default_factory=list)
    current_index: int = 0
    error: Optional[SessionError] = None
    face_present: bool = False
    face_confidence: float = 0.0
    recording_started_at: Optional[float] = None
    recording_ended_at: Optional[float] = None
    recording_timed_out: bool = False
    artifact_id: Optional[str] = None

    # Face statistics over the recording phase, used for evidence metadata
    recording_frames: int = 0
    recording_face_frames: int = 0
    recording_confidence_sum: float = 0.0

    @classmethod
    def create(cls) -> "Session":
        return cls(session_id=str(uuid.uuid4()), created_at=time.time())

    @property
    def current_challenge(self) -> Optional[ChallengeEntry]:
        if 0 <= self.current_index < len(self.challenges):
            return self.challenges[self.current_index]
        return None

    @property
    def all_challenges_passed(self) -> bool:
        return bool(self.challenges) and all(c.state.completed for c in self.challenges)

    def observe_recording_frame(self, face_present: bool, confidence: float) -> None:
        self.recording_frames += 1
        if face_present:
            self.recording_face_frames += 1
            self.recording_confidence_sum += confidence


@dataclass
class EvidenceMetadata:
    face_detected: bool
    face_confidence: float
    all_challenges_passed: bool
    challenges_completed: int = 0
    total_challenges: int = 0

    @classmethod
    def from_session(cls, session: Session) -> "EvidenceMetadata":
        face_frames = session.recording_face_frames
        mean_confidence = session.recording_confidence_sum / face_frames if face_frames else 0.0
        return cls(
            face_detected=face_frames > 0,
            face_confidence=float(min(1.0, max(0.0, mean_confidence))),
            all_challenges_passed=session.all_challenges_passed and not session.recording_timed_out,
            challenges_completed=sum(1 for c in session.challenges if c.state.completed),
            total_challenges=len(session.challenges),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "face_detected": self.face_detected,
            "face_confidence": self.face_confidence,
            "all_challenges_passed": self.all_challenges_passed,
            "challenges_completed": self.challenges_completed,
            "total_challenges": self.total_challenges,
        }


@dataclass
class EvidenceArtifact:
    """Recorded video plus landmark-free challenge summary for one session"""
    id: str
    video_bytes: bytes
    challenge_summary: List[Dict[str, Any]]
    metadata: EvidenceMetadata
    created_at: float
    content_type: str = "video/x-motion-jpeg"

    def to_record(self) -> Dict[str, Any]:
        """JSON-serializable part of the artifact (everything except the video)"""
        return {
            "id": self.id,
            "challenge_summary": self.challenge_summary,
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at,
            "content_type": self.content_type,
            "video_size": len(self.video_bytes),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any], video_bytes: bytes) -> "EvidenceArtifact":
        return cls(
            id=record["id"],
            video_bytes=video_bytes,
            challenge_summary=list(record.get("challenge_summary", [])),
            metadata=EvidenceMetadata(**record["metadata"]),
            created_at=float(record["created_at"]),
            content_type=record.get("content_type", "video/x-motion-jpeg"),
        )


@dataclass
class SubmissionVerdict:
    accepted: bool
    reason: Optional[str] = None
    verification_id: Optional[str] = None
