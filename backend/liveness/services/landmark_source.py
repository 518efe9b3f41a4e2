"""
Landmark sources: turn a video frame into at most one face's normalized landmarks
"""
import abc
import asyncio
import logging
import os
from typing import Optional

import cv2
import numpy as np

from ..errors import DetectorError
from ..models.data_models import FaceObservation

logger = logging.getLogger(__name__)


class LandmarkSource(abc.ABC):
    """Black-box facial landmark estimator used by the detection loop"""

    @abc.abstractmethod
    async def initialize(self) -> None:
        """Make the estimator ready. Raises DetectorError on failure."""

    @abc.abstractmethod
    async def detect(self, frame: np.ndarray) -> FaceObservation:
        """Estimate landmarks for the single face in frame, if any."""

    def close(self) -> None:
        """Release estimator resources."""


class MediaPipeLandmarkSource(LandmarkSource):
    """
    Landmark source backed by the MediaPipe FaceLandmarker task.

    Configuration:
    - num_faces: 1 (only a single face is tracked)
    - min_face_detection_confidence / min_face_presence_confidence: 0.5
    - running_mode: IMAGE (each frame is independent)

    The landmarker is created on initialize() and inference runs in a worker
    thread so the event loop is never blocked.
    """

    def __init__(
        self,
        model_path: Optional[str] = None,
        target_size: tuple = (640, 480),
        min_confidence: float = 0.5,
    ):
        """
        Args:
            model_path: Path to the face_landmarker.task model file
            target_size: Frame size (width, height) fed to the model
            min_confidence: Detection / presence thresholds for the task
        """
        self.model_path = model_path
        self.target_size = target_size
        self.min_confidence = min_confidence
        self._face_landmarker = None

    @property
    def ready(self) -> bool:
        return self._face_landmarker is not None

    async def initialize(self) -> None:
        if self._face_landmarker is not None:
            return
        self._face_landmarker = await asyncio.to_thread(self._create_landmarker)
        logger.info("MediaPipe FaceLandmarker initialized")

    def _create_landmarker(self):
        if self.model_path is None:
            raise DetectorError(
                "Model path not provided. Set MEDIAPIPE_MODEL_PATH to a face_landmarker.task file."
            )
        if not os.path.exists(self.model_path):
            raise DetectorError(f"MediaPipe model not found at {self.model_path}")

        import mediapipe as mp

        try:
            base_options = mp.tasks.BaseOptions(model_asset_path=self.model_path)
            options = mp.tasks.vision.FaceLandmarkerOptions(
                base_options=base_options,
                running_mode=mp.tasks.vision.RunningMode.IMAGE,
                num_faces=1,
                min_face_detection_confidence=self.min_confidence,
                min_face_presence_confidence=self.min_confidence,
                output_face_blendshapes=False,
                output_facial_transformation_matrixes=False,
            )
            return mp.tasks.vision.FaceLandmarker.create_from_options(options)
        except Exception as e:
            logger.error(f"Failed to initialize MediaPipe FaceLandmarker: {e}")
            raise DetectorError("Failed to initialize face detection") from e

    def preprocess_frame(self, frame: np.ndarray) -> np.ndarray:
        """
        Resize to the model input size and convert BGR (OpenCV) to RGB (MediaPipe).
        """
        resized = cv2.resize(frame, self.target_size, interpolation=cv2.INTER_LINEAR)
        return cv2.cvtColor(resized, cv2.COLOR_BGR2RGB)

    async def detect(self, frame: np.ndarray) -> FaceObservation:
        if self._face_landmarker is None:
            raise DetectorError("Face detector not initialized")
        return await asyncio.to_thread(self._detect_sync, frame)

    def _detect_sync(self, frame: np.ndarray) -> FaceObservation:
        import mediapipe as mp

        rgb_frame = self.preprocess_frame(frame)
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb_frame)
        detection_result = self._face_landmarker.detect(mp_image)

        if not detection_result.face_landmarks:
            return FaceObservation.empty()

        face = detection_result.face_landmarks[0]
        landmarks = np.array([[lm.x, lm.y, lm.z] for lm in face])
        return FaceObservation(landmarks=landmarks, confidence=self._presence(face))

    @staticmethod
    def _presence(face) -> float:
        """
        Mean per-landmark presence when the model reports it. The task only
        returns faces above its presence threshold, so a face without
        per-landmark scores counts as fully present.
        """
        scores = [lm.presence for lm in face if getattr(lm, "presence", None)]
        if not scores:
            return 1.0
        return float(np.clip(np.mean(scores), 0.0, 1.0))

    def close(self) -> None:
        if self._face_landmarker is not None:
            self._face_landmarker.close()
            self._face_landmarker = None
