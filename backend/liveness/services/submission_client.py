"""
Submission Client: hands a finished evidence package to the verification endpoint
"""
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import SubmissionError
from ..models.data_models import EvidenceArtifact, SubmissionVerdict

logger = logging.getLogger(__name__)


# Request/Response models
class ChallengePayload(BaseModel):
    """One challenge as the endpoint expects it"""
    type: str
    direction: Optional[str] = None
    count: Optional[int] = None


class SubmissionMetadata(BaseModel):
    """Metadata part of the multipart upload (camelCase on the wire)"""
    model_config = ConfigDict(populate_by_name=True)

    video_id: str = Field(alias="videoId")
    challenges: List[ChallengePayload] = Field(min_length=1, max_length=5)
    face_detected: bool = Field(alias="faceDetected")
    all_challenges_passed: bool = Field(alias="allChallengesPassed")
    face_confidence: float = Field(ge=0.0, le=1.0, alias="faceConfidence")
    challenges_completed: int = Field(ge=0, alias="challengesCompleted")
    total_challenges: int = Field(ge=0, alias="totalChallenges")
    timestamp: int

    @classmethod
    def from_artifact(cls, artifact: EvidenceArtifact) -> "SubmissionMetadata":
        return cls(
            video_id=artifact.id,
            challenges=[
                ChallengePayload(
                    type=c["type"],
                    direction=c.get("direction"),
                    count=c.get("count"),
                )
                for c in artifact.challenge_summary
            ],
            face_detected=artifact.metadata.face_detected,
            all_challenges_passed=artifact.metadata.all_challenges_passed,
            face_confidence=artifact.metadata.face_confidence,
            challenges_completed=artifact.metadata.challenges_completed,
            total_challenges=artifact.metadata.total_challenges,
            timestamp=int(artifact.created_at * 1000),
        )


class SubmissionResponse(BaseModel):
    """Body returned by the verification endpoint"""
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class SubmissionClient:
    """
    Uploads evidence and turns the endpoint's answer into a verdict.

    - success=true                        -> accepted
    - success=false with a readable body  -> rejected, with the endpoint's reason
    - 5xx, unreadable body, network error -> SubmissionError
    """

    VIDEO_FILENAME = "liveness-check.mjpeg"

    def __init__(
        self,
        submit_url: str,
        api_token: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.submit_url = submit_url
        self.api_token = api_token
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    def _headers(self) -> Dict[str, str]:
        if self.api_token:
            return {"Authorization": f"Bearer {self.api_token}"}
        return {}

    async def submit(self, artifact: EvidenceArtifact) -> SubmissionVerdict:
        """
        Upload one artifact.

        Args:
            artifact: Persisted evidence artifact

        Returns:
            SubmissionVerdict (accepted or rejected with reason)

        Raises:
            SubmissionError: when no usable verdict could be obtained
        """
        metadata = SubmissionMetadata.from_artifact(artifact)
        files = {"video": (self.VIDEO_FILENAME, artifact.video_bytes, artifact.content_type)}
        data = {"metadata": metadata.model_dump_json(by_alias=True)}

        try:
            response = await self._client.post(
                self.submit_url, data=data, files=files, headers=self._headers()
            )
        except httpx.HTTPError as e:
            logger.error(f"Submission of {artifact.id} failed: {e}")
            raise SubmissionError() from e

        if response.status_code >= 500:
            logger.error(f"Verification endpoint returned {response.status_code} for {artifact.id}")
            raise SubmissionError(f"Verification service unavailable ({response.status_code})")

        try:
            body = SubmissionResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"Unreadable verification response ({response.status_code}): {e}")
            raise SubmissionError() from e

        if body.success and response.is_success:
            verification_id = (body.data or {}).get("verificationId")
            logger.info(f"Verification accepted for {artifact.id}")
            return SubmissionVerdict(accepted=True, reason=body.message, verification_id=verification_id)

        reason = body.message or body.error or "Verification failed"
        logger.info(f"Verification rejected for {artifact.id}: {reason}")
        return SubmissionVerdict(accepted=False, reason=reason)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
