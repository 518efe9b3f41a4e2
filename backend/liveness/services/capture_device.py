"""
Media-capture devices owned by a verification session
"""
import abc
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import cv2
import numpy as np

from ..errors import CameraError

logger = logging.getLogger(__name__)


class CaptureDevice(abc.ABC):
    """A camera that yields BGR frames. Exclusively owned by one session."""

    @property
    @abc.abstractmethod
    def is_open(self) -> bool:
        ...

    @abc.abstractmethod
    async def open(self) -> None:
        """Acquire the device. Raises CameraError on denial or absence."""

    @abc.abstractmethod
    async def read_frame(self) -> np.ndarray:
        """Return the next frame. Raises CameraError if the device is gone."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the device. Safe to call more than once."""


@asynccontextmanager
async def acquired(device: CaptureDevice) -> AsyncIterator[CaptureDevice]:
    """Scoped acquisition: the device is closed on every exit path."""
    await device.open()
    try:
        yield device
    finally:
        await device.close()


class OpenCVCaptureDevice(CaptureDevice):
    """
    Webcam via cv2.VideoCapture.

    The detection loop and the recorder both read from the same device, so
    reads are serialized with an asyncio.Lock and run in a worker thread.
    """

    def __init__(self, camera_index: int = 0, width: int = 1280, height: int = 720):
        self.camera_index = camera_index
        self.width = width
        self.height = height
        self._capture: Optional[cv2.VideoCapture] = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._capture is not None

    async def open(self) -> None:
        if self._capture is not None:
            return
        pending = asyncio.ensure_future(asyncio.to_thread(self._open_capture))
        try:
            capture = await asyncio.shield(pending)
        except asyncio.CancelledError:
            # The worker thread keeps opening the camera; release whatever it produced
            await self._release_abandoned(pending)
            raise
        self._capture = capture
        logger.info(f"Camera {self.camera_index} opened")

    async def _release_abandoned(self, pending: asyncio.Future) -> None:
        try:
            capture = await pending
        except CameraError as e:
            logger.warning(f"Camera {self.camera_index} failed to open after cancellation: {e}")
            return
        await asyncio.to_thread(capture.release)
        logger.info(f"Camera {self.camera_index} released after cancelled open")

    def _open_capture(self) -> cv2.VideoCapture:
        capture = cv2.VideoCapture(self.camera_index)
        if not capture.isOpened():
            capture.release()
            raise CameraError()
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        return capture

    async def read_frame(self) -> np.ndarray:
        async with self._lock:
            capture = self._capture
            if capture is None:
                raise CameraError("Camera is not open")
            pending = asyncio.ensure_future(asyncio.to_thread(capture.read))
            try:
                ok, frame = await asyncio.shield(pending)
            except asyncio.CancelledError:
                # Hold the lock until the native read returns so close() never overlaps it
                await asyncio.gather(pending, return_exceptions=True)
                raise
        if not ok or frame is None:
            raise CameraError("Camera stopped delivering frames")
        return frame

    async def close(self) -> None:
        async with self._lock:
            capture, self._capture = self._capture, None
            if capture is not None:
                await asyncio.to_thread(capture.release)
                logger.info(f"Camera {self.camera_index} released")
