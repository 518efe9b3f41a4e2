"""
Recorder: accumulates encoded video chunks between two session transitions
"""
import asyncio
import logging
import time
from typing import Callable, List, Optional

import cv2
import numpy as np

from ..errors import CameraError
from .capture_device import CaptureDevice

logger = logging.getLogger(__name__)

MJPEG_CONTENT_TYPE = "video/x-motion-jpeg"


def encode_jpeg_chunk(frame: np.ndarray, quality: int = 80) -> bytes:
    """
    Encode one frame as a JPEG chunk. Concatenated chunks form an MJPEG stream.
    """
    ok, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        return b""
    return buffer.tobytes()


class Recorder:
    """
    Continuous chunk accumulator.

    start() and stop() are synchronous so they can run inside a state
    transition; a pump task samples the device at a fixed rate in between.
    The recorder knows nothing about challenges.
    """

    content_type = MJPEG_CONTENT_TYPE

    def __init__(
        self,
        device: CaptureDevice,
        fps: float = 15.0,
        encoder: Callable[[np.ndarray], bytes] = encode_jpeg_chunk,
        clock: Callable[[], float] = time.time,
    ):
        self.device = device
        self.frame_interval = 1.0 / fps if fps > 0 else 0.0
        self.encoder = encoder
        self.clock = clock

        self.chunks: List[bytes] = []
        self.started_at: Optional[float] = None
        self.ended_at: Optional[float] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Task] = None

    @property
    def is_recording(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("Recorder already started")
        self.chunks = []
        self.started_at = self.clock()
        self.ended_at = None
        self._task = asyncio.create_task(self._pump())
        logger.info("Recording started")

    def stop(self) -> bytes:
        """Stop recording and return the accumulated video."""
        if self._task is not None:
            self._task.cancel()
            self._stopping, self._task = self._task, None
            self.ended_at = self.clock()
            logger.info(
                f"Recording stopped: {len(self.chunks)} chunks, "
                f"{self.ended_at - self.started_at:.2f}s"
            )
        return self.data()

    def discard(self) -> None:
        """Stop without keeping anything."""
        self.stop()
        self.chunks = []

    async def wait_stopped(self) -> None:
        """Wait until a stopped pump has finished its last device read."""
        task, self._stopping = self._stopping, None
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def data(self) -> bytes:
        return b"".join(self.chunks)

    async def _pump(self) -> None:
        while True:
            try:
                frame = await self.device.read_frame()
            except CameraError as e:
                logger.warning(f"Recorder could not read frame: {e}")
            else:
                chunk = self.encoder(frame)
                if chunk:
                    self.chunks.append(chunk)
            await asyncio.sleep(self.frame_interval)
