"""
Detection Loop: sample a frame, estimate landmarks, hand the observation to the session
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from ..errors import CameraError
from ..models.data_models import FaceObservation, SessionStatus
from .capture_device import CaptureDevice
from .landmark_source import LandmarkSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectionCycle:
    """Session snapshot taken at the start of a cycle"""
    session_id: str
    status: SessionStatus
    challenge_index: int


class CycleHandler(Protocol):
    def begin_cycle(self) -> Optional[DetectionCycle]:
        ...

    def apply_observation(self, cycle: DetectionCycle, observation: FaceObservation) -> None:
        ...

    def on_capture_error(self, cycle: DetectionCycle, error: CameraError) -> None:
        ...

    def on_cycle_error(self, error: Exception) -> None:
        ...


class DetectionLoop:
    """
    Continuously rescheduled sampling cycle.

    Each cycle is an explicit tick(); run() only schedules the next tick after
    the previous one has finished, so slow inference never builds a backlog.
    """

    def __init__(
        self,
        device: CaptureDevice,
        landmark_source: LandmarkSource,
        handler: CycleHandler,
        interval: float = 0.0,
    ):
        self.device = device
        self.landmark_source = landmark_source
        self.handler = handler
        self.interval = interval
        self.cycles = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def tick(self) -> Optional[FaceObservation]:
        """Run one detection cycle. Returns the observation, or None if skipped."""
        cycle = self.handler.begin_cycle()
        if cycle is None:
            return None

        try:
            frame = await self.device.read_frame()
        except CameraError as e:
            logger.error(f"Frame capture failed: {e}")
            self.handler.on_capture_error(cycle, e)
            return None

        try:
            observation = await self.landmark_source.detect(frame)
        except Exception as e:
            logger.warning(f"Landmark inference failed, treating frame as faceless: {e}")
            observation = FaceObservation.empty()

        self.cycles += 1
        self.handler.apply_observation(cycle, observation)
        return observation

    def start(self) -> None:
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self.run())

    async def run(self) -> None:
        self._running = True
        logger.info("Detection loop started")
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Detection cycle failed: {e}", exc_info=True)
                self.handler.on_cycle_error(e)
            await asyncio.sleep(self.interval)
        logger.info(f"Detection loop stopped after {self.cycles} cycles")

    def stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        self._running = False

    async def cancel(self) -> None:
        """Stop immediately, abandoning any in-flight cycle."""
        self._running = False
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
