"""
Runtime configuration, read from the environment (and a .env file if present)
"""
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _default_model_path() -> Optional[str]:
    default_path = os.path.join(os.path.expanduser("~"), ".mediapipe_models", "face_landmarker.task")
    if os.path.exists(default_path):
        return default_path
    return None


@dataclass
class Settings:
    # Submission endpoint
    submit_url: str = "http://localhost:3000/api/verification/liveness/submit"
    api_token: Optional[str] = None
    submit_timeout: float = 30.0

    # Local evidence persistence
    storage_dir: str = os.path.join(os.path.expanduser("~"), ".liveness", "evidence")
    retention_days: float = 7.0

    # Devices
    model_path: Optional[str] = None
    camera_index: int = 0

    # Detector initialization
    detector_max_attempts: int = 3
    detector_backoff_seconds: float = 2.0
    detector_attempt_timeout: float = 15.0

    # Recording watchdog: allowance per challenge plus a grace period
    challenge_allowance_seconds: float = 5.0
    recording_grace_seconds: float = 3.0

    # Persist + submit bound
    processing_timeout: float = 60.0

    # Detection loop / recorder
    min_presence_confidence: float = 0.5
    detection_interval: float = 1.0 / 30.0
    recorder_fps: float = 15.0

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, loading .env first."""
        load_dotenv()
        defaults = cls()
        return cls(
            submit_url=os.getenv("LIVENESS_SUBMIT_URL", defaults.submit_url),
            api_token=os.getenv("LIVENESS_API_TOKEN") or None,
            submit_timeout=float(os.getenv("SUBMIT_TIMEOUT", defaults.submit_timeout)),
            storage_dir=os.getenv("LIVENESS_STORAGE_DIR", defaults.storage_dir),
            retention_days=float(os.getenv("LIVENESS_RETENTION_DAYS", defaults.retention_days)),
            model_path=os.getenv("MEDIAPIPE_MODEL_PATH") or _default_model_path(),
            camera_index=int(os.getenv("CAMERA_INDEX", defaults.camera_index)),
            detector_max_attempts=int(os.getenv("DETECTOR_MAX_ATTEMPTS", defaults.detector_max_attempts)),
            detector_backoff_seconds=float(os.getenv("DETECTOR_BACKOFF_SECONDS", defaults.detector_backoff_seconds)),
            detector_attempt_timeout=float(os.getenv("DETECTOR_ATTEMPT_TIMEOUT", defaults.detector_attempt_timeout)),
            challenge_allowance_seconds=float(
                os.getenv("CHALLENGE_ALLOWANCE_SECONDS", defaults.challenge_allowance_seconds)
            ),
            recording_grace_seconds=float(os.getenv("RECORDING_GRACE_SECONDS", defaults.recording_grace_seconds)),
            processing_timeout=float(os.getenv("PROCESSING_TIMEOUT", defaults.processing_timeout)),
            min_presence_confidence=float(os.getenv("MIN_PRESENCE_CONFIDENCE", defaults.min_presence_confidence)),
            detection_interval=float(os.getenv("DETECTION_INTERVAL", defaults.detection_interval)),
            recorder_fps=float(os.getenv("RECORDER_FPS", defaults.recorder_fps)),
        )

    def recording_budget(self, challenge_count: int) -> float:
        """Watchdog bound for the recording phase"""
        return self.challenge_allowance_seconds * challenge_count + self.recording_grace_seconds
