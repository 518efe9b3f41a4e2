"""
Session Manager for liveness verification

Drives one verification attempt through its states:

    intro -> initializing -> detecting -> recording -> processing -> success
                  |              |            |             |
                  +--------------+------------+-------------+----> error(kind)

Every state change is applied in a synchronous section of the event loop, so
a transition always finishes before the next queued event (detection cycle,
watchdog, user action, I/O completion) is processed. Sessions are never
resumed: retry and cancel mint a new session.
"""
import asyncio
import logging
import time
from contextlib import AsyncExitStack
from typing import Awaitable, Callable, List, Optional, Set

from ..config import Settings
from ..errors import (
    DEFAULT_MESSAGES,
    CameraError,
    DetectorError,
    EvidenceStoreError,
    InvalidTransitionError,
    SubmissionError,
)
from ..models.data_models import (
    TERMINAL_STATUSES,
    ChallengeEntry,
    ErrorKind,
    EvidenceArtifact,
    EvidenceMetadata,
    FaceObservation,
    Session,
    SessionError,
    SessionStatus,
)
from .capture_device import CaptureDevice, acquired
from .challenge_engine import ChallengeEngine
from .challenge_validator import ChallengeValidator
from .detection_loop import DetectionCycle, DetectionLoop
from .evidence_store import EvidenceStore
from .landmark_source import LandmarkSource
from .recorder import Recorder
from .retry_policy import RetryPolicy
from .submission_client import SubmissionClient

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    SessionStatus.INTRO: {SessionStatus.INITIALIZING},
    SessionStatus.INITIALIZING: {SessionStatus.DETECTING, SessionStatus.ERROR},
    SessionStatus.DETECTING: {SessionStatus.RECORDING, SessionStatus.ERROR},
    SessionStatus.RECORDING: {SessionStatus.PROCESSING, SessionStatus.ERROR},
    SessionStatus.PROCESSING: {SessionStatus.SUCCESS, SessionStatus.ERROR},
    SessionStatus.SUCCESS: set(),
    # Resubmission of a retained artifact only
    SessionStatus.ERROR: {SessionStatus.PROCESSING},
}

# Errors after which the persisted artifact can be submitted again
RESUBMITTABLE = frozenset({ErrorKind.TIMEOUT, ErrorKind.SUBMISSION})

Listener = Callable[[Session], None]


class SessionManager:
    """
    Owns the current Session and every resource attached to it.

    The capture device is acquired in `initializing` and released on every
    exit path (processing, error, cancel, close). Challenge progress is
    applied from detection cycles; the recorder only sees the two edges
    detecting->recording and recording->processing.
    """

    def __init__(
        self,
        device: CaptureDevice,
        landmark_source: LandmarkSource,
        evidence_store: EvidenceStore,
        submission_client: SubmissionClient,
        settings: Optional[Settings] = None,
        challenge_engine: Optional[ChallengeEngine] = None,
        validator_factory: Callable[[], ChallengeValidator] = ChallengeValidator,
        recorder_factory: Optional[Callable[[CaptureDevice], Recorder]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        run_detection_loop: bool = True,
    ):
        """
        Args:
            device: Camera exclusively owned by the current session
            landmark_source: Facial landmark estimator
            evidence_store: Local artifact persistence
            submission_client: Client for the verification endpoint
            settings: Timeouts, retry policy and thresholds
            challenge_engine: Challenge sequence generator
            validator_factory: Builds one validator per session
            recorder_factory: Builds a recorder for the device
            sleep: Used for detector backoff waits
            run_detection_loop: Start the background loop on entering
                `detecting`. When False, cycles are driven through tick().
        """
        self.settings = settings or Settings()
        self.device = device
        self.landmark_source = landmark_source
        self.evidence_store = evidence_store
        self.submission_client = submission_client
        self.challenge_engine = challenge_engine or ChallengeEngine()
        self._validator_factory = validator_factory
        self._recorder_factory = recorder_factory or (
            lambda dev: Recorder(dev, fps=self.settings.recorder_fps)
        )
        self._sleep = sleep
        self._run_detection_loop = run_detection_loop

        self._session = Session.create()
        self._listeners: List[Listener] = []
        self._changed = asyncio.Event()

        self._validator = validator_factory()
        self._recorder: Optional[Recorder] = None
        self._detection: Optional[DetectionLoop] = None
        self._device_stack: Optional[AsyncExitStack] = None
        self._watchdog: Optional[asyncio.TimerHandle] = None
        self._init_task: Optional[asyncio.Task] = None
        self._processing_task: Optional[asyncio.Task] = None
        self._pending_put: Optional[asyncio.Future] = None
        self._background: Set[asyncio.Task] = set()

        self.detector_retry: Optional[RetryPolicy] = None

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def recorder(self) -> Optional[Recorder]:
        return self._recorder

    @property
    def detection_loop(self) -> Optional[DetectionLoop]:
        return self._detection

    def add_listener(self, listener: Listener) -> None:
        """Register a callback invoked with the session after every change."""
        self._listeners.append(listener)

    async def wait_for_status(self, *statuses: SessionStatus, timeout: Optional[float] = None) -> Session:
        async def _wait() -> Session:
            while self._session.status not in statuses:
                await self._changed.wait()
            return self._session

        return await asyncio.wait_for(_wait(), timeout)

    def _notify(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()
        for listener in list(self._listeners):
            try:
                listener(self._session)
            except Exception as e:
                logger.error(f"Session listener failed: {e}", exc_info=True)

    def _transition(self, session: Session, status: SessionStatus) -> None:
        if session is not self._session:
            raise InvalidTransitionError(f"Session {session.session_id} is no longer active")
        current = session.status
        if status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(f"{current.value} -> {status.value}")
        session.status = status
        logger.info(f"Session {session.session_id}: {current.value} -> {status.value}")
        self._notify()

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def start(self) -> Session:
        """
        intro -> initializing -> detecting (or error).

        Acquires the camera, readies the landmark source with bounded
        retries and generates the challenge sequence.
        """
        session = self._session
        self._transition(session, SessionStatus.INITIALIZING)
        await self._drain_background()

        task = asyncio.create_task(self._initialize(session))
        self._init_task = task
        await asyncio.wait({task})
        if self._init_task is task:
            self._init_task = None
        if not task.cancelled():
            task.result()
        return self._session

    async def begin_recording(self) -> bool:
        """
        detecting -> recording. Ignored (returns False) unless a face is
        currently in view.
        """
        session = self._session
        if session.status != SessionStatus.DETECTING:
            logger.warning(f"Begin ignored in state {session.status.value}")
            return False
        if not session.face_present:
            logger.info("Begin ignored: no face in view")
            return False

        self._recorder.start()
        session.recording_started_at = self._recorder.started_at
        session.current_index = 0
        session.challenges[0].state.started_at = time.time()
        self._validator.reset()
        self._transition(session, SessionStatus.RECORDING)

        budget = self.settings.recording_budget(len(session.challenges))
        self._watchdog = asyncio.get_running_loop().call_later(
            budget, self._on_watchdog_expired, session
        )
        logger.info(
            f"Recording {len(session.challenges)} challenges, watchdog {budget:.1f}s; "
            f"first: {session.challenges[0].descriptor.instruction_text}"
        )
        return True

    async def cancel(self) -> bool:
        """
        Abandon the attempt from any non-terminal state. Nothing is persisted,
        the camera is released and a fresh intro session replaces this one.
        """
        session = self._session
        if session.status in TERMINAL_STATUSES:
            return False
        logger.info(f"Session {session.session_id} cancelled in state {session.status.value}")

        self._cancel_watchdog()
        if self._recorder is not None:
            self._recorder.discard()
        if self._detection is not None:
            await self._detection.cancel()
        await self._cancel_task(self._init_task)
        await self._cancel_task(self._processing_task)
        self._init_task = None
        self._processing_task = None
        await self._release_device()

        if self._pending_put is not None:
            await asyncio.gather(self._pending_put, return_exceptions=True)
            self._pending_put = None
        if session.artifact_id is not None:
            try:
                await self.evidence_store.delete(session.artifact_id)
            except EvidenceStoreError as e:
                logger.error(f"Could not discard artifact of cancelled session: {e}")

        self._reset()
        return True

    async def retry(self) -> Session:
        """Start over after an error with a brand-new session."""
        if self._session.status != SessionStatus.ERROR:
            raise InvalidTransitionError("Retry is only available after an error")
        await self._release_device()
        await self._drain_background()
        self._reset()
        return await self.start()

    async def resubmit(self) -> bool:
        """
        error(timeout|submission) -> processing, submitting the artifact that
        was kept on disk. Nothing is re-recorded.
        """
        session = self._session
        error = session.error
        if session.status != SessionStatus.ERROR or error is None or not error.can_resubmit:
            return False

        artifact_id = session.artifact_id
        session.error = None
        self._transition(session, SessionStatus.PROCESSING)
        self._processing_task = asyncio.create_task(self._resubmit(session, artifact_id))
        return True

    async def tick(self) -> Optional[FaceObservation]:
        """Run one detection cycle explicitly."""
        if self._detection is None:
            return None
        return await self._detection.tick()

    async def close(self) -> None:
        """Tear down everything owned by the current session."""
        self._cancel_watchdog()
        if self._recorder is not None:
            self._recorder.discard()
        if self._detection is not None:
            await self._detection.cancel()
        await self._cancel_task(self._init_task)
        await self._cancel_task(self._processing_task)
        await self._release_device()
        await self._drain_background()

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def _initialize(self, session: Session) -> None:
        try:
            await self._sweep_expired_evidence()

            try:
                await self._acquire_device()
            except CameraError as e:
                self._fail(session, ErrorKind.CAMERA, e.message)
                return

            try:
                await self._prepare_detector()
            except DetectorError as e:
                self._fail(session, ErrorKind.DETECTOR, e.message)
                return

            session.challenges = [
                ChallengeEntry(descriptor) for descriptor in self.challenge_engine.generate_sequence()
            ]
            session.current_index = 0
            self._validator = self._validator_factory()
            self._recorder = self._recorder_factory(self.device)
            self._detection = DetectionLoop(
                self.device, self.landmark_source, self, interval=self.settings.detection_interval
            )
            self._transition(session, SessionStatus.DETECTING)
            if self._run_detection_loop:
                self._detection.start()
        except Exception as e:
            logger.error(f"Unexpected failure while initializing session: {e}", exc_info=True)
            self._fail(session, ErrorKind.DETECTOR)

    async def _sweep_expired_evidence(self) -> None:
        try:
            await self.evidence_store.delete_older_than(self.settings.retention_days)
        except (EvidenceStoreError, OSError) as e:
            logger.warning(f"Evidence retention sweep failed: {e}")

    async def _acquire_device(self) -> None:
        stack = AsyncExitStack()
        await stack.enter_async_context(acquired(self.device))
        self._device_stack = stack

    async def _release_device(self) -> None:
        stack, self._device_stack = self._device_stack, None
        if stack is None:
            return
        # Readers must be done with the device before it is closed
        if self._recorder is not None:
            await self._recorder.wait_stopped()
        if self._detection is not None:
            await self._detection.cancel()
        await stack.aclose()

    async def _prepare_detector(self) -> None:
        """
        Up to max_attempts initializations with a fixed backoff between them.
        An attempt that exceeds its timeout is terminal.
        """
        policy = RetryPolicy(
            max_attempts=self.settings.detector_max_attempts,
            backoff_seconds=self.settings.detector_backoff_seconds,
            attempt_timeout=self.settings.detector_attempt_timeout,
        )
        self.detector_retry = policy

        while True:
            attempt = policy.begin_attempt()
            try:
                await asyncio.wait_for(self.landmark_source.initialize(), timeout=policy.attempt_timeout)
                logger.info(f"Face detector ready after {attempt} attempt(s)")
                return
            except asyncio.TimeoutError:
                logger.error(f"Face detector initialization timed out after {policy.attempt_timeout}s")
                raise DetectorError("Face detection took too long to start")
            except DetectorError as e:
                logger.warning(f"Face detector attempt {attempt}/{policy.max_attempts} failed: {e}")
                if policy.exhausted:
                    raise
                await policy.backoff(self._sleep)

    # ------------------------------------------------------------------
    # Detection cycle handling
    # ------------------------------------------------------------------

    def begin_cycle(self) -> Optional[DetectionCycle]:
        session = self._session
        if session.status not in (SessionStatus.DETECTING, SessionStatus.RECORDING):
            return None
        return DetectionCycle(session.session_id, session.status, session.current_index)

    def apply_observation(self, cycle: DetectionCycle, observation: FaceObservation) -> None:
        session = self._session
        if session.session_id != cycle.session_id:
            return
        if session.status not in (SessionStatus.DETECTING, SessionStatus.RECORDING):
            return

        present = observation.has_face and observation.confidence >= self.settings.min_presence_confidence
        session.face_present = present
        session.face_confidence = observation.confidence if observation.has_face else 0.0

        # Only frames sampled while recording count, and only for the
        # challenge that was current when the cycle began
        if cycle.status != SessionStatus.RECORDING or session.status != SessionStatus.RECORDING:
            return
        session.observe_recording_frame(present, session.face_confidence)
        if not present or cycle.challenge_index != session.current_index:
            return

        entry = session.current_challenge
        if entry is None:
            return
        result = self._validator.validate(observation.landmarks, entry.descriptor)
        now = time.time()
        if entry.state.record(result, now):
            logger.info(
                f"Challenge {session.current_index + 1}/{len(session.challenges)} "
                f"'{entry.descriptor.instruction_text}' completed (confidence={result.confidence:.2f})"
            )
            self._advance(session, now)

    def on_capture_error(self, cycle: DetectionCycle, error: CameraError) -> None:
        session = self._session
        if session.session_id != cycle.session_id:
            return
        self._fail(session, ErrorKind.CAMERA, error.message)

    def on_cycle_error(self, error: Exception) -> None:
        session = self._session
        if session.status not in (SessionStatus.DETECTING, SessionStatus.RECORDING):
            return
        self._fail(session, ErrorKind.DETECTOR, "Face detection stopped unexpectedly")

    def _advance(self, session: Session, now: float) -> None:
        session.current_index += 1
        self._validator.reset()
        next_entry = session.current_challenge
        if next_entry is not None:
            next_entry.state.started_at = now
            logger.info(f"Next challenge: {next_entry.descriptor.instruction_text}")
            self._notify()
        else:
            self._finish_recording(session, timed_out=False)

    # ------------------------------------------------------------------
    # Recording end and processing
    # ------------------------------------------------------------------

    def _on_watchdog_expired(self, session: Session) -> None:
        self._watchdog = None
        if session is not self._session or session.status != SessionStatus.RECORDING:
            return
        completed = sum(1 for c in session.challenges if c.state.completed)
        logger.warning(
            f"Recording watchdog expired for session {session.session_id}: "
            f"{completed}/{len(session.challenges)} challenges completed"
        )
        self._finish_recording(session, timed_out=True)

    def _cancel_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def _finish_recording(self, session: Session, timed_out: bool) -> None:
        self._cancel_watchdog()
        if self._detection is not None:
            self._detection.stop()
        video = self._recorder.stop()
        session.recording_ended_at = self._recorder.ended_at
        session.recording_timed_out = timed_out

        artifact = EvidenceArtifact(
            id=session.session_id,
            video_bytes=video,
            challenge_summary=[entry.to_summary() for entry in session.challenges],
            metadata=EvidenceMetadata.from_session(session),
            created_at=time.time(),
            content_type=self._recorder.content_type,
        )
        self._transition(session, SessionStatus.PROCESSING)
        self._processing_task = asyncio.create_task(self._process(session, artifact))

    async def _process(self, session: Session, artifact: EvidenceArtifact) -> None:
        await self._release_device()
        await self._run_processing(session, artifact, persist=True)

    async def _resubmit(self, session: Session, artifact_id: str) -> None:
        if self._pending_put is not None:
            # A write cut short by the processing timeout is still settling
            await asyncio.gather(self._pending_put, return_exceptions=True)
            self._pending_put = None
        try:
            artifact = await self.evidence_store.get(artifact_id)
        except EvidenceStoreError as e:
            self._fail(session, ErrorKind.SAVE, e.message)
            return
        if artifact is None:
            session.artifact_id = None
            self._fail(session, ErrorKind.SAVE, "The saved verification video is no longer available")
            return
        await self._run_processing(session, artifact, persist=False)

    async def _run_processing(self, session: Session, artifact: EvidenceArtifact, persist: bool) -> None:
        try:
            await asyncio.wait_for(
                self._persist_and_submit(session, artifact, persist),
                timeout=self.settings.processing_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Processing of session {session.session_id} exceeded "
                f"{self.settings.processing_timeout}s"
            )
            self._fail(session, ErrorKind.TIMEOUT)
        except EvidenceStoreError as e:
            self._fail(session, ErrorKind.SAVE, e.message)
        except SubmissionError as e:
            self._fail(session, ErrorKind.SUBMISSION, e.message)
        except Exception as e:
            logger.error(f"Unexpected processing failure: {e}", exc_info=True)
            self._fail(session, ErrorKind.SUBMISSION)

    async def _persist_and_submit(self, session: Session, artifact: EvidenceArtifact, persist: bool) -> None:
        if persist:
            session.artifact_id = artifact.id
            # Shielded so a timeout never interrupts a write half-way;
            # cancel() waits for it before discarding the artifact
            self._pending_put = asyncio.ensure_future(self.evidence_store.put(artifact))
            try:
                await asyncio.shield(self._pending_put)
            except EvidenceStoreError:
                session.artifact_id = None
                raise
            self._pending_put = None

        verdict = await self.submission_client.submit(artifact)
        if session is not self._session:
            return

        if verdict.accepted:
            try:
                await self.evidence_store.delete(artifact.id)
            except EvidenceStoreError as e:
                logger.warning(f"Could not remove acknowledged artifact {artifact.id}: {e}")
            session.artifact_id = None
            self._transition(session, SessionStatus.SUCCESS)
        else:
            self._fail(session, ErrorKind.REJECTED, verdict.reason or DEFAULT_MESSAGES[ErrorKind.REJECTED])

    # ------------------------------------------------------------------
    # Failure and teardown
    # ------------------------------------------------------------------

    def _fail(self, session: Session, kind: ErrorKind, message: Optional[str] = None) -> None:
        if session is not self._session or session.status in TERMINAL_STATUSES:
            logger.warning(f"Ignoring {kind.value} error for inactive session {session.session_id}")
            return

        self._cancel_watchdog()
        if self._recorder is not None and self._recorder.is_recording:
            self._recorder.discard()
        if self._detection is not None:
            self._detection.stop()

        session.error = SessionError(
            kind=kind,
            message=message or DEFAULT_MESSAGES[kind],
            can_resubmit=kind in RESUBMITTABLE and session.artifact_id is not None,
        )
        logger.warning(f"Session {session.session_id} failed ({kind.value}): {session.error.message}")
        self._transition(session, SessionStatus.ERROR)
        self._spawn(self._release_device())

    def _reset(self) -> None:
        self._session = Session.create()
        self._recorder = None
        self._detection = None
        self._validator.reset()
        self.detector_retry = None
        logger.info(f"New session {self._session.session_id}")
        self._notify()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background cleanup failed: {task.exception()}")

    async def _drain_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
