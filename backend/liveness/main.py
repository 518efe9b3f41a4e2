"""
Runner for a single liveness verification attempt against the local camera
"""
import asyncio
import logging

from liveness.config import Settings
from liveness.models.data_models import TERMINAL_STATUSES, Session, SessionStatus
from liveness.services import (
    EvidenceStore,
    MediaPipeLandmarkSource,
    OpenCVCaptureDevice,
    SessionManager,
    SubmissionClient,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_manager(settings: Settings) -> SessionManager:
    """Wire the real camera, detector, store and endpoint client."""
    return SessionManager(
        device=OpenCVCaptureDevice(camera_index=settings.camera_index),
        landmark_source=MediaPipeLandmarkSource(
            model_path=settings.model_path,
            min_confidence=settings.min_presence_confidence,
        ),
        evidence_store=EvidenceStore(settings.storage_dir),
        submission_client=SubmissionClient(
            settings.submit_url,
            api_token=settings.api_token,
            timeout=settings.submit_timeout,
        ),
        settings=settings,
    )


class InstructionLogger:
    """Logs the active challenge whenever it changes"""

    def __init__(self):
        self._last = None

    def __call__(self, session: Session) -> None:
        entry = session.current_challenge if session.status == SessionStatus.RECORDING else None
        key = (session.session_id, session.current_index) if entry else None
        if key is not None and key != self._last:
            logger.info(
                f"Challenge {session.current_index + 1}/{len(session.challenges)}: "
                f"{entry.descriptor.instruction_text}"
            )
        self._last = key


async def run_once(settings: Settings) -> Session:
    manager = build_manager(settings)
    manager.add_listener(InstructionLogger())
    try:
        session = await manager.start()
        if session.status == SessionStatus.DETECTING:
            logger.info("Position your face in the frame")
            while manager.session.status == SessionStatus.DETECTING:
                if await manager.begin_recording():
                    break
                await asyncio.sleep(settings.detection_interval)

        session = await manager.wait_for_status(*TERMINAL_STATUSES)
        if session.status == SessionStatus.SUCCESS:
            logger.info(f"Verification submitted for session {session.session_id}")
        else:
            logger.error(f"Verification failed ({session.error.kind.value}): {session.error.message}")
        return session
    finally:
        await manager.close()
        manager.landmark_source.close()
        await manager.submission_client.aclose()


def main() -> int:
    settings = Settings.from_env()
    try:
        session = asyncio.run(run_once(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    return 0 if session.status == SessionStatus.SUCCESS else 1


if __name__ == "__main__":
    raise SystemExit(main())
