"""
Local evidence persistence

Each artifact lives in its own directory under the storage root:

    <storage_dir>/<artifact_id>/artifact.json   challenge summary + metadata
    <storage_dir>/<artifact_id>/video.bin       recorded video

Writes go to a hidden temporary directory first and are moved into place with
a single rename, so readers never observe a half-written artifact.
"""
import asyncio
import json
import logging
import os
import shutil
import threading
import time
import uuid
from typing import List, Optional

from ..errors import EvidenceStoreError
from ..models.data_models import EvidenceArtifact

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class EvidenceStore:
    """Key -> artifact store addressed by session id."""

    RECORD_FILE = "artifact.json"
    VIDEO_FILE = "video.bin"
    TEMP_PREFIX = ".tmp-"

    def __init__(self, storage_dir: str):
        self.storage_dir = storage_dir
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Async API (disk I/O runs in a worker thread)
    # ------------------------------------------------------------------

    async def put(self, artifact: EvidenceArtifact) -> str:
        """
        Persist an artifact exactly once.

        Raises:
            EvidenceStoreError: if the id already exists or the write fails
        """
        return await asyncio.to_thread(self._put, artifact)

    async def get(self, artifact_id: str) -> Optional[EvidenceArtifact]:
        return await asyncio.to_thread(self._get, artifact_id)

    async def delete(self, artifact_id: str) -> bool:
        return await asyncio.to_thread(self._delete, artifact_id)

    async def list_ids(self) -> List[str]:
        return await asyncio.to_thread(self._list_ids)

    async def delete_older_than(self, days: float, now: Optional[float] = None) -> int:
        """
        Retention sweep: remove artifacts created more than `days` ago.

        Returns:
            Number of artifacts removed
        """
        return await asyncio.to_thread(self._delete_older_than, days, now)

    # ------------------------------------------------------------------
    # Synchronous implementation
    # ------------------------------------------------------------------

    def _path(self, artifact_id: str) -> str:
        if (
            not artifact_id
            or artifact_id in (".", "..")
            or artifact_id.startswith(".")
            or os.sep in artifact_id
            or (os.altsep and os.altsep in artifact_id)
        ):
            raise ValueError(f"Invalid artifact id: {artifact_id!r}")
        return os.path.join(self.storage_dir, artifact_id)

    def _put(self, artifact: EvidenceArtifact) -> str:
        final_path = self._path(artifact.id)
        with self._lock:
            if os.path.exists(final_path):
                raise EvidenceStoreError(f"Artifact {artifact.id} already exists")

            temp_path = os.path.join(self.storage_dir, f"{self.TEMP_PREFIX}{uuid.uuid4().hex}")
            try:
                os.makedirs(temp_path)
                with open(os.path.join(temp_path, self.VIDEO_FILE), "wb") as f:
                    f.write(artifact.video_bytes)
                with open(os.path.join(temp_path, self.RECORD_FILE), "w") as f:
                    json.dump(artifact.to_record(), f, indent=2, default=str)
                os.replace(temp_path, final_path)
            except OSError as e:
                logger.error(f"Failed to save evidence artifact {artifact.id}: {e}")
                shutil.rmtree(temp_path, ignore_errors=True)
                raise EvidenceStoreError() from e

        logger.info(f"Saved evidence artifact {artifact.id} ({len(artifact.video_bytes)} bytes)")
        return artifact.id

    def _get(self, artifact_id: str) -> Optional[EvidenceArtifact]:
        path = self._path(artifact_id)
        with self._lock:
            if not os.path.isdir(path):
                return None
            try:
                with open(os.path.join(path, self.RECORD_FILE), "r") as f:
                    record = json.load(f)
                with open(os.path.join(path, self.VIDEO_FILE), "rb") as f:
                    video_bytes = f.read()
            except (OSError, ValueError) as e:
                raise EvidenceStoreError(f"Could not read artifact {artifact_id}: {e}") from e
        return EvidenceArtifact.from_record(record, video_bytes)

    def _delete(self, artifact_id: str) -> bool:
        path = self._path(artifact_id)
        with self._lock:
            if not os.path.isdir(path):
                return False
            try:
                shutil.rmtree(path)
            except OSError as e:
                raise EvidenceStoreError(f"Could not delete artifact {artifact_id}: {e}") from e
        logger.info(f"Deleted evidence artifact {artifact_id}")
        return True

    def _list_ids(self) -> List[str]:
        if not os.path.isdir(self.storage_dir):
            return []
        return sorted(
            name for name in os.listdir(self.storage_dir)
            if not name.startswith(".") and os.path.isdir(os.path.join(self.storage_dir, name))
        )

    def _created_at(self, artifact_id: str) -> float:
        path = self._path(artifact_id)
        try:
            with open(os.path.join(path, self.RECORD_FILE), "r") as f:
                return float(json.load(f)["created_at"])
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Unreadable record for {artifact_id}, using directory mtime: {e}")
            return os.path.getmtime(path)

    def _delete_older_than(self, days: float, now: Optional[float] = None) -> int:
        cutoff = (now if now is not None else time.time()) - days * SECONDS_PER_DAY
        removed = 0
        for artifact_id in self._list_ids():
            if self._created_at(artifact_id) <= cutoff and self._delete(artifact_id):
                removed += 1
        if removed:
            logger.info(f"Retention sweep removed {removed} artifacts older than {days} days")
        return removed
