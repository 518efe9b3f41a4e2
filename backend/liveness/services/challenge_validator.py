"""
Challenge Validator: per-frame verification of challenge gestures from facial landmarks
"""
import logging
from collections import deque
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..models.data_models import (
    ChallengeDescriptor,
    ChallengeType,
    TurnDirection,
    ValidationResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LandmarkIndices:
    """
    Landmark positions used by the validator.

    Defaults follow the MediaPipe FaceMesh topology; another estimator can be
    plugged in by supplying its own indices.
    """
    nose_tip: int = 1
    left_eye_outer: int = 33
    left_eye_inner: int = 133
    left_eye_top: int = 159
    left_eye_bottom: int = 145
    right_eye_outer: int = 263
    right_eye_inner: int = 362
    right_eye_top: int = 386
    right_eye_bottom: int = 374
    mouth_left: int = 61
    mouth_right: int = 291
    mouth_top: int = 13
    mouth_bottom: int = 14

    @property
    def required_points(self) -> int:
        return max(vars(self).values()) + 1


class ChallengeValidator:
    """
    Validates one challenge at a time against a stream of landmark frames.

    Tracking state (neutral baselines, blink counters, nod excursions) belongs
    to the challenge being validated and is dropped whenever the challenge
    changes or reset() is called.
    """

    PASS_THRESHOLD = 0.8
    BASELINE_FRAMES = 3

    # Head turn: nose offset from eye center, normalized coordinates
    TURN_SATURATION = 0.10

    # Blink: eye aspect ratio
    EAR_CLOSED_THRESHOLD = 0.2
    MIN_CLOSED_FRAMES = 1
    EAR_HISTORY = 30

    # Smile: gains over the neutral mouth shape
    SMILE_WIDTH_SATURATION = 0.08
    SMILE_LIFT_SATURATION = 0.12

    # Head nod: vertical excursion each way
    NOD_SATURATION = 0.05

    def __init__(self, indices: Optional[LandmarkIndices] = None):
        self.indices = indices or LandmarkIndices()
        self._active: Optional[ChallengeDescriptor] = None
        self.reset()

    def reset(self) -> None:
        """Drop all tracking state (baselines, counters, history)."""
        self._active = None
        self._baseline_samples = []
        self._baseline = None

        self.blink_count = 0
        self._closed_frames = 0
        self.ear_history = deque(maxlen=self.EAR_HISTORY)

        self._nod_down = 0.0
        self._nod_up = 0.0

    def validate(self, landmarks: np.ndarray, challenge: ChallengeDescriptor) -> ValidationResult:
        """
        Validate one landmark frame against a challenge.

        Args:
            landmarks: Normalized landmarks, shape (N, 2) or (N, 3)
            challenge: The challenge currently being performed

        Returns:
            ValidationResult with pass flag and confidence in [0, 1]
        """
        if challenge is not self._active:
            self.reset()
            self._active = challenge

        landmarks = np.asarray(landmarks, dtype=float)
        if landmarks.ndim != 2 or landmarks.shape[0] < self.indices.required_points:
            logger.warning(f"Insufficient landmarks for validation: shape={landmarks.shape}")
            return ValidationResult(passed=False, confidence=0.0)

        if challenge.type == ChallengeType.HEAD_TURN:
            return self.validate_head_turn(landmarks, challenge.direction or TurnDirection.LEFT)
        if challenge.type == ChallengeType.BLINK:
            return self.validate_blink(landmarks, challenge.repeat_count or 2)
        if challenge.type == ChallengeType.SMILE:
            return self.validate_smile(landmarks)
        if challenge.type == ChallengeType.HEAD_NOD:
            return self.validate_head_nod(landmarks)

        logger.warning(f"Unknown challenge type: {challenge.type}")
        return ValidationResult(passed=False, confidence=0.0)

    # ------------------------------------------------------------------
    # Per-type validators
    # ------------------------------------------------------------------

    def validate_head_turn(self, landmarks: np.ndarray, direction: TurnDirection) -> ValidationResult:
        """
        Horizontal nose displacement relative to the eye center, compared with
        the neutral offset captured over the first frames of the challenge.
        Turning left moves the nose toward smaller x.
        """
        idx = self.indices
        eye_center_x = (landmarks[idx.left_eye_outer][0] + landmarks[idx.right_eye_outer][0]) / 2.0
        offset = float(landmarks[idx.nose_tip][0] - eye_center_x)

        baseline = self._calibrate(offset)
        if baseline is None:
            return ValidationResult(passed=False, confidence=0.0)

        displacement = offset - baseline
        signed = -displacement if direction == TurnDirection.LEFT else displacement
        return self._result(signed / self.TURN_SATURATION)

    def validate_blink(self, landmarks: np.ndarray, required_count: int) -> ValidationResult:
        """
        Count closed->open eye transitions.

        A blink counts when the eye aspect ratio stayed below the closed
        threshold for at least MIN_CLOSED_FRAMES sampled frames and then
        reopened. Long closures are not penalized.
        """
        ear = self.eye_aspect_ratio(landmarks)
        self.ear_history.append(ear)

        if ear < self.EAR_CLOSED_THRESHOLD:
            self._closed_frames += 1
        else:
            if self._closed_frames >= self.MIN_CLOSED_FRAMES:
                self.blink_count += 1
                logger.debug(f"Blink {self.blink_count}/{required_count} detected (EAR={ear:.3f})")
            self._closed_frames = 0

        required = max(1, required_count)
        return ValidationResult(
            passed=self.blink_count >= required,
            confidence=min(1.0, self.blink_count / required),
        )

    def validate_smile(self, landmarks: np.ndarray) -> ValidationResult:
        """
        Mouth shape against the neutral shape captured at challenge start.

        Two ratios are tracked: mouth width over eye width (a smile widens the
        mouth) and corner lift over mouth width (a smile raises the corners
        above the lip center). The larger gain drives confidence.
        """
        width_ratio, lift_ratio = self.mouth_ratios(landmarks)

        baseline = self._calibrate(np.array([width_ratio, lift_ratio]))
        if baseline is None:
            return ValidationResult(passed=False, confidence=0.0)

        width_gain = (width_ratio - baseline[0]) / self.SMILE_WIDTH_SATURATION
        lift_gain = (lift_ratio - baseline[1]) / self.SMILE_LIFT_SATURATION
        return self._result(max(width_gain, lift_gain))

    def validate_head_nod(self, landmarks: np.ndarray) -> ValidationResult:
        """
        Vertical nose excursions from the neutral position, in either order.
        Each direction contributes half of the confidence.
        """
        nose_y = float(landmarks[self.indices.nose_tip][1])

        baseline = self._calibrate(nose_y)
        if baseline is None:
            return ValidationResult(passed=False, confidence=0.0)

        self._nod_down = max(self._nod_down, nose_y - baseline)
        self._nod_up = max(self._nod_up, baseline - nose_y)

        down_credit = min(1.0, self._nod_down / self.NOD_SATURATION)
        up_credit = min(1.0, self._nod_up / self.NOD_SATURATION)
        return self._result(0.5 * down_credit + 0.5 * up_credit)

    # ------------------------------------------------------------------
    # Landmark geometry
    # ------------------------------------------------------------------

    def eye_aspect_ratio(self, landmarks: np.ndarray) -> float:
        """Average of both eyes' lid distance over eye width"""
        idx = self.indices
        left = self._ratio(landmarks, idx.left_eye_top, idx.left_eye_bottom, idx.left_eye_outer, idx.left_eye_inner)
        right = self._ratio(landmarks, idx.right_eye_top, idx.right_eye_bottom, idx.right_eye_outer, idx.right_eye_inner)
        return (left + right) / 2.0

    def mouth_ratios(self, landmarks: np.ndarray) -> tuple[float, float]:
        """Return (mouth width / eye width, corner lift / mouth width)"""
        idx = self.indices
        left = landmarks[idx.mouth_left]
        right = landmarks[idx.mouth_right]
        mouth_width = float(np.linalg.norm(right[:2] - left[:2])) + 1e-6
        eye_width = float(np.linalg.norm(landmarks[idx.right_eye_outer][:2] - landmarks[idx.left_eye_outer][:2])) + 1e-6

        # Image y grows downward, so lifted corners have smaller y than the lip center
        center_y = (landmarks[idx.mouth_top][1] + landmarks[idx.mouth_bottom][1]) / 2.0
        lift = center_y - (left[1] + right[1]) / 2.0
        return mouth_width / eye_width, float(lift) / mouth_width

    @staticmethod
    def _ratio(landmarks: np.ndarray, top: int, bottom: int, outer: int, inner: int) -> float:
        vertical = np.linalg.norm(landmarks[top][:2] - landmarks[bottom][:2])
        horizontal = np.linalg.norm(landmarks[outer][:2] - landmarks[inner][:2])
        return float(vertical / (horizontal + 1e-6))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _calibrate(self, sample):
        """
        Collect neutral samples until BASELINE_FRAMES are available.

        Returns the baseline (mean of samples) once calibrated, None before.
        """
        if self._baseline is not None:
            return self._baseline

        self._baseline_samples.append(sample)
        if len(self._baseline_samples) < self.BASELINE_FRAMES:
            return None

        self._baseline = np.mean(np.array(self._baseline_samples, dtype=float), axis=0)
        logger.debug(f"Neutral baseline calibrated for {self._active.kind if self._active else '?'}: {self._baseline}")
        return self._baseline

    def _result(self, raw_confidence: float) -> ValidationResult:
        confidence = float(np.clip(raw_confidence, 0.0, 1.0))
        return ValidationResult(passed=confidence >= self.PASS_THRESHOLD, confidence=confidence)
