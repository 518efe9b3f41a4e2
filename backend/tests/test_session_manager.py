"""
Unit tests for SessionManager: state machine, resources, recording and processing
"""
import asyncio
import time

import pytest

from fakes import (
    FakeDevice,
    FakeLandmarkSource,
    FakeSubmissionClient,
    FixedChallengeEngine,
    RecordingSleep,
    ScriptedValidator,
    face,
)
from liveness.config import Settings
from liveness.errors import EvidenceStoreError, InvalidTransitionError, SubmissionError
from liveness.models.data_models import (
    ErrorKind,
    EvidenceArtifact,
    EvidenceMetadata,
    FaceObservation,
    SessionStatus,
    SubmissionVerdict,
)
from liveness.services.evidence_store import SECONDS_PER_DAY, EvidenceStore
from liveness.services.recorder import Recorder
from liveness.services.session_manager import SessionManager


class FailingStore(EvidenceStore):
    async def put(self, artifact):
        raise EvidenceStoreError()


class SlowStore(EvidenceStore):
    async def put(self, artifact):
        await asyncio.sleep(0.3)
        return await super().put(artifact)


class ExplodingValidator:
    def reset(self):
        pass

    def validate(self, landmarks, challenge):
        raise ValueError("landmark array is corrupt")


class TestSessionManager:
    """Test suite for SessionManager class"""

    @pytest.fixture(autouse=True)
    def _components(self, tmp_path):
        self.device = FakeDevice()
        self.source = FakeLandmarkSource()
        self.store = EvidenceStore(str(tmp_path / "evidence"))
        self.client = FakeSubmissionClient()
        self.sleep = RecordingSleep()
        self.settings = Settings(storage_dir=str(tmp_path / "evidence"))

    def make_manager(self, *kinds, validator=None, **overrides):
        kwargs = dict(
            device=self.device,
            landmark_source=self.source,
            evidence_store=self.store,
            submission_client=self.client,
            settings=self.settings,
            challenge_engine=FixedChallengeEngine(*(kinds or ("blink", "smile"))),
            recorder_factory=lambda device: Recorder(device, fps=200, encoder=lambda frame: b"frame"),
            sleep=self.sleep,
            run_detection_loop=False,
        )
        if validator is not None:
            kwargs["validator_factory"] = lambda: validator
        kwargs.update(overrides)
        return SessionManager(**kwargs)

    async def start_recording(self, manager):
        """intro -> detecting -> recording with a face in view"""
        await manager.start()
        assert manager.session.status == SessionStatus.DETECTING
        await manager.tick()
        assert await manager.begin_recording() is True
        # Let the recorder capture a few frames
        await asyncio.sleep(0.02)

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def test_start_reaches_detecting(self):
        manager = self.make_manager()
        statuses = []
        manager.add_listener(lambda session: statuses.append(session.status))

        async def scenario():
            session = await manager.start()
            return session, self.device.is_open

        session, device_open = asyncio.run(scenario())

        assert session.status == SessionStatus.DETECTING
        assert statuses == [SessionStatus.INITIALIZING, SessionStatus.DETECTING]
        assert [c.descriptor.kind for c in session.challenges] == ["blink", "smile"]
        assert device_open is True
        assert manager.detector_retry.attempts == 1

    def test_camera_failure(self):
        self.device.fail_open = True
        manager = self.make_manager()

        session = asyncio.run(manager.start())

        assert session.status == SessionStatus.ERROR
        assert session.error.kind == ErrorKind.CAMERA
        assert session.error.can_resubmit is False
        assert self.source.init_calls == 0

    def test_detector_succeeds_on_third_attempt(self):
        self.source.init_failures = 2
        manager = self.make_manager()

        session = asyncio.run(manager.start())

        assert session.status == SessionStatus.DETECTING
        assert session.error is None
        assert manager.detector_retry.attempts == 3
        assert manager.detector_retry.waits == [2.0, 2.0]
        assert self.sleep.calls == [2.0, 2.0]

    def test_detector_gives_up_after_three_attempts(self):
        self.source.init_failures = 5
        manager = self.make_manager()

        async def scenario():
            session = await manager.start()
            await asyncio.sleep(0)
            return session, self.device.is_open

        session, device_open = asyncio.run(scenario())

        assert session.status == SessionStatus.ERROR
        assert session.error.kind == ErrorKind.DETECTOR
        assert self.source.init_calls == 3
        assert len(manager.detector_retry.waits) == 2
        assert device_open is False

    def test_detector_timeout_is_terminal(self):
        self.source.hang_init = True
        self.settings.detector_attempt_timeout = 0.05
        manager = self.make_manager()

        session = asyncio.run(manager.start())

        assert session.status == SessionStatus.ERROR
        assert session.error.kind == ErrorKind.DETECTOR
        assert self.source.init_calls == 1

    def test_retention_sweep_on_start(self):
        old = EvidenceArtifact(
            id="stale",
            video_bytes=b"x",
            challenge_summary=[],
            metadata=EvidenceMetadata(face_detected=True, face_confidence=0.9, all_challenges_passed=True),
            created_at=time.time() - 8 * SECONDS_PER_DAY,
        )
        manager = self.make_manager()

        async def scenario():
            await self.store.put(old)
            await manager.start()
            return await self.store.list_ids()

        assert asyncio.run(scenario()) == []

    def test_illegal_transition(self):
        manager = self.make_manager()
        with pytest.raises(InvalidTransitionError):
            manager._transition(manager.session, SessionStatus.RECORDING)

    # ------------------------------------------------------------------
    # Detecting
    # ------------------------------------------------------------------

    def test_begin_without_face_stays_detecting(self):
        self.source.default = FaceObservation.empty()
        manager = self.make_manager()

        async def scenario():
            await manager.start()
            await manager.tick()
            return await manager.begin_recording()

        assert asyncio.run(scenario()) is False
        assert manager.session.status == SessionStatus.DETECTING
        assert manager.session.error is None
        assert manager.recorder.is_recording is False

    def test_low_confidence_face_is_not_present(self):
        self.source.default = face(confidence=0.3)
        manager = self.make_manager()

        async def scenario():
            await manager.start()
            await manager.tick()
            return await manager.begin_recording()

        assert asyncio.run(scenario()) is False
        assert manager.session.face_present is False
        assert manager.session.face_confidence == pytest.approx(0.3)

    def test_begin_outside_detecting_is_ignored(self):
        manager = self.make_manager()
        assert asyncio.run(manager.begin_recording()) is False
        assert manager.session.status == SessionStatus.INTRO

    def test_frames_before_recording_are_not_validated(self):
        validator = ScriptedValidator([1.0])
        manager = self.make_manager(validator=validator)

        async def scenario():
            await manager.start()
            for _ in range(3):
                await manager.tick()

        asyncio.run(scenario())
        assert validator.seen == []
        assert manager.session.challenges[0].state.completed is False

    def test_camera_loss_while_detecting(self):
        manager = self.make_manager()

        async def scenario():
            await manager.start()
            self.device.fail_reads = True
            await manager.tick()
            await asyncio.sleep(0)
            return self.device.is_open

        device_open = asyncio.run(scenario())
        assert manager.session.status == SessionStatus.ERROR
        assert manager.session.error.kind == ErrorKind.CAMERA
        assert device_open is False

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def test_end_to_end_blink_then_smile(self):
        """Three blink frames then two smile frames at 0.9 complete both challenges"""
        validator = ScriptedValidator([0.0, 0.5, 1.0, 0.9, 0.9])
        manager = self.make_manager("blink", "smile", validator=validator)

        async def scenario():
            await self.start_recording(manager)
            for _ in range(5):
                await manager.tick()
            session = await manager.wait_for_status(SessionStatus.SUCCESS, SessionStatus.ERROR, timeout=5)
            return session, self.device.is_open

        session, device_open = asyncio.run(scenario())

        assert validator.seen == ["blink", "blink", "blink", "smile"]
        assert all(c.state.completed for c in session.challenges)
        assert session.status == SessionStatus.SUCCESS
        artifact = self.client.submitted[0]
        assert artifact.id == session.session_id
        assert artifact.metadata.all_challenges_passed is True
        assert artifact.metadata.face_detected is True
        assert artifact.metadata.challenges_completed == 2
        # Acknowledged artifacts are not kept
        assert asyncio.run(self.store.list_ids()) == []
        assert device_open is False

    def test_end_to_end_with_landmark_validation(self):
        neutral = face()
        frames = [
            neutral,  # presence check before begin
            face(), face(eyes_closed=True), face(), face(eyes_closed=True), face(),  # blink twice
            neutral, neutral, neutral, face(smile=True),  # calibrate, then smile
        ]
        self.source.observations = list(frames)
        manager = self.make_manager("blink", "smile")

        async def scenario():
            await manager.start()
            await manager.tick()
            await manager.begin_recording()
            for _ in range(len(frames) - 1):
                await manager.tick()
            return await manager.wait_for_status(SessionStatus.SUCCESS, SessionStatus.ERROR, timeout=5)

        session = asyncio.run(scenario())
        assert session.status == SessionStatus.SUCCESS
        assert self.client.submitted[0].metadata.all_challenges_passed is True

    def test_recorder_interval_matches_session(self):
        validator = ScriptedValidator([1.0, 1.0])
        manager = self.make_manager(validator=validator)

        async def scenario():
            await self.start_recording(manager)
            await manager.tick()
            await manager.tick()
            return await manager.wait_for_status(SessionStatus.SUCCESS, timeout=5)

        session = asyncio.run(scenario())
        recorder = manager.recorder

        assert session.recording_started_at == recorder.started_at
        assert session.recording_ended_at == recorder.ended_at
        assert session.recording_started_at <= session.recording_ended_at
        assert len(self.client.submitted[0].video_bytes) > 0
        for entry in session.challenges:
            assert session.recording_started_at <= entry.state.completed_at <= session.recording_ended_at

    def test_no_recording_without_recording_state(self):
        manager = self.make_manager()
        recorder = None

        async def capture():
            nonlocal recorder
            await manager.start()
            recorder = manager.recorder
            await manager.tick()
            await manager.cancel()

        asyncio.run(capture())
        assert recorder.started_at is None
        assert recorder.data() == b""

    def test_completion_locks_in(self):
        validator = ScriptedValidator([0.2, 0.95, 0.1])
        manager = self.make_manager("smile", "blink", validator=validator)

        async def scenario():
            await self.start_recording(manager)
            for _ in range(3):
                await manager.tick()

        asyncio.run(scenario())
        smile, blink = manager.session.challenges
        assert smile.state.completed is True
        # Later low-confidence frame belongs to the next challenge
        assert blink.state.completed is False
        assert blink.state.progress == pytest.approx(0.1)
        assert manager.session.current_index == 1

    def test_stale_cycle_is_not_credited_to_next_challenge(self):
        validator = ScriptedValidator([1.0, 1.0])
        manager = self.make_manager("smile", "head_nod", "blink", validator=validator)

        async def scenario():
            await self.start_recording(manager)
            stale = manager.begin_cycle()
            fresh = manager.begin_cycle()
            manager.apply_observation(fresh, face())
            manager.apply_observation(stale, face())

        asyncio.run(scenario())
        smile, nod, blink = manager.session.challenges
        assert smile.state.completed is True
        assert nod.state.completed is False
        assert validator.seen == ["smile"]

    def test_watchdog_produces_partial_artifact(self):
        self.settings.challenge_allowance_seconds = 0.05
        self.settings.recording_grace_seconds = 0.05
        self.client.verdict = SubmissionVerdict(accepted=False, reason="Not all challenges were completed")
        validator = ScriptedValidator([1.0])
        manager = self.make_manager("blink", "smile", validator=validator)

        async def scenario():
            await self.start_recording(manager)
            await manager.tick()
            session = await manager.wait_for_status(SessionStatus.ERROR, SessionStatus.SUCCESS, timeout=5)
            return session, await self.store.list_ids()

        session, stored = asyncio.run(scenario())

        assert session.recording_timed_out is True
        assert len(self.client.submitted) == 1
        metadata = self.client.submitted[0].metadata
        assert metadata.all_challenges_passed is False
        assert metadata.challenges_completed == 1
        assert stored == [session.session_id]
        assert session.error.kind == ErrorKind.REJECTED
        assert session.error.message == "Not all challenges were completed"

    def test_unexpected_cycle_failure_ends_session(self):
        manager = self.make_manager(validator=ExplodingValidator(), run_detection_loop=True)

        async def scenario():
            await manager.start()
            await manager.wait_for_status(SessionStatus.DETECTING, timeout=5)
            while not manager.session.face_present:
                await asyncio.sleep(0.005)
            assert await manager.begin_recording() is True
            session = await manager.wait_for_status(SessionStatus.ERROR, timeout=5)
            await asyncio.sleep(0.05)
            return session, self.device.is_open

        session, device_open = asyncio.run(scenario())
        assert session.error.kind == ErrorKind.DETECTOR
        assert session.error.message == "Face detection stopped unexpectedly"
        assert device_open is False
        assert session.recording_started_at is not None
        assert manager.recorder.is_recording is False
        assert manager.detection_loop.running is False

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def complete_all(self, manager):
        """Drive a two-challenge session to the end of recording"""
        async def scenario():
            await self.start_recording(manager)
            await manager.tick()
            await manager.tick()
        return scenario

    def test_rejected_verdict(self):
        self.client.verdict = SubmissionVerdict(accepted=False, reason="Face not clearly visible")
        manager = self.make_manager(validator=ScriptedValidator([1.0, 1.0]))

        async def scenario():
            await self.complete_all(manager)()
            return await manager.wait_for_status(SessionStatus.ERROR, timeout=5)

        session = asyncio.run(scenario())
        assert session.error.kind == ErrorKind.REJECTED
        assert session.error.message == "Face not clearly visible"
        assert session.error.can_resubmit is False
        assert asyncio.run(manager.resubmit()) is False

    def test_save_failure(self):
        self.store = FailingStore(self.settings.storage_dir)
        manager = self.make_manager(validator=ScriptedValidator([1.0, 1.0]))

        async def scenario():
            await self.complete_all(manager)()
            return await manager.wait_for_status(SessionStatus.ERROR, timeout=5)

        session = asyncio.run(scenario())
        assert session.error.kind == ErrorKind.SAVE
        assert session.error.can_resubmit is False
        assert self.client.submitted == []

    def test_submission_failure_keeps_artifact(self):
        self.client.error = SubmissionError()
        manager = self.make_manager(validator=ScriptedValidator([1.0, 1.0]))

        async def scenario():
            await self.complete_all(manager)()
            session = await manager.wait_for_status(SessionStatus.ERROR, timeout=5)
            return session, await self.store.list_ids()

        session, stored = asyncio.run(scenario())
        assert session.error.kind == ErrorKind.SUBMISSION
        assert session.error.can_resubmit is True
        assert stored == [session.session_id]

    def test_processing_timeout_then_resubmit(self):
        self.settings.processing_timeout = 0.1
        self.client.block = True
        manager = self.make_manager(validator=ScriptedValidator([1.0, 1.0]))

        async def scenario():
            await self.complete_all(manager)()
            failed = await manager.wait_for_status(SessionStatus.ERROR, timeout=5)
            error = failed.error
            stored = await self.store.list_ids()

            self.client.block = False
            assert await manager.resubmit() is True
            done = await manager.wait_for_status(SessionStatus.SUCCESS, SessionStatus.ERROR, timeout=5)
            return error, stored, done, await self.store.list_ids()

        error, stored, done, remaining = asyncio.run(scenario())

        assert error.kind == ErrorKind.TIMEOUT
        assert error.can_resubmit is True
        assert stored == [done.session_id]
        assert done.status == SessionStatus.SUCCESS
        # Same artifact submitted twice, nothing re-recorded
        assert len(self.client.submitted) == 2
        assert self.client.submitted[0].video_bytes == self.client.submitted[1].video_bytes
        assert remaining == []

    def test_resubmit_waits_for_interrupted_write(self):
        self.settings.processing_timeout = 0.1
        self.store = SlowStore(self.settings.storage_dir)
        manager = self.make_manager(validator=ScriptedValidator([1.0, 1.0]))

        async def scenario():
            await self.complete_all(manager)()
            failed = await manager.wait_for_status(SessionStatus.ERROR, timeout=5)
            error = failed.error
            # Resubmit right away, while the write is still in flight
            assert await manager.resubmit() is True
            done = await manager.wait_for_status(SessionStatus.SUCCESS, SessionStatus.ERROR, timeout=5)
            return error, done, await self.store.list_ids()

        error, done, remaining = asyncio.run(scenario())

        assert error.kind == ErrorKind.TIMEOUT
        assert error.can_resubmit is True
        assert done.status == SessionStatus.SUCCESS
        assert done.error is None
        assert len(self.client.submitted) == 1
        assert remaining == []

    def test_retry_starts_new_session(self):
        self.client.verdict = SubmissionVerdict(accepted=False, reason="Rejected")
        manager = self.make_manager(validator=ScriptedValidator([1.0, 1.0]))

        async def scenario():
            await self.complete_all(manager)()
            failed = await manager.wait_for_status(SessionStatus.ERROR, timeout=5)
            fresh = await manager.retry()
            return failed, fresh

        failed, fresh = asyncio.run(scenario())
        assert fresh.session_id != failed.session_id
        assert fresh.status == SessionStatus.DETECTING
        assert fresh.error is None
        assert all(not c.state.completed for c in fresh.challenges)
        assert self.device.open_count == 2

    def test_retry_requires_error(self):
        manager = self.make_manager()
        with pytest.raises(InvalidTransitionError):
            asyncio.run(manager.retry())

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def snapshot(self):
        """Stored artifact ids and device state, taken before the event loop shuts down"""
        return await self.store.list_ids(), self.device.is_open

    def assert_cancelled_cleanly(self, manager, old_session_id, snapshot):
        stored, device_open = snapshot
        assert manager.session.status == SessionStatus.INTRO
        assert manager.session.session_id != old_session_id
        assert stored == []
        assert device_open is False

    def test_cancel_from_intro(self):
        manager = self.make_manager()
        old_id = manager.session.session_id

        async def scenario():
            assert await manager.cancel() is True
            return await self.snapshot()

        self.assert_cancelled_cleanly(manager, old_id, asyncio.run(scenario()))

    def test_cancel_while_initializing(self):
        self.source.hang_init = True
        manager = self.make_manager()
        old_id = manager.session.session_id

        async def scenario():
            start = asyncio.create_task(manager.start())
            while self.source.init_calls == 0:
                await asyncio.sleep(0.005)
            assert manager.session.status == SessionStatus.INITIALIZING
            assert self.device.is_open is True
            await manager.cancel()
            await start
            return await self.snapshot()

        self.assert_cancelled_cleanly(manager, old_id, asyncio.run(scenario()))

    def test_cancel_while_detecting(self):
        manager = self.make_manager()
        old_id = manager.session.session_id

        async def scenario():
            await manager.start()
            await manager.tick()
            await manager.cancel()
            return await self.snapshot()

        self.assert_cancelled_cleanly(manager, old_id, asyncio.run(scenario()))

    def test_cancel_while_recording(self):
        validator = ScriptedValidator([1.0])
        manager = self.make_manager(validator=validator)
        old_id = manager.session.session_id

        async def scenario():
            await self.start_recording(manager)
            await manager.tick()
            recorder = manager.recorder
            await manager.cancel()
            return recorder, await self.snapshot()

        recorder, snapshot = asyncio.run(scenario())
        self.assert_cancelled_cleanly(manager, old_id, snapshot)
        assert recorder.is_recording is False
        assert recorder.data() == b""
        assert self.client.submitted == []

    def test_cancel_while_processing(self):
        self.client.block = True
        manager = self.make_manager(validator=ScriptedValidator([1.0, 1.0]))
        old_id = manager.session.session_id

        async def scenario():
            await self.complete_all(manager)()
            await asyncio.wait_for(self.client.called.wait(), timeout=5)
            assert manager.session.status == SessionStatus.PROCESSING
            await manager.cancel()
            return await self.snapshot()

        self.assert_cancelled_cleanly(manager, old_id, asyncio.run(scenario()))

    def test_cancel_in_terminal_state_is_ignored(self):
        self.device.fail_open = True
        manager = self.make_manager()

        async def scenario():
            await manager.start()
            return await manager.cancel()

        assert asyncio.run(scenario()) is False
        assert manager.session.status == SessionStatus.ERROR
