"""Revocable playback handles for recorded audio."""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Dict, List

from .models import AudioBlob

logger = logging.getLogger(__name__)


class ObjectUrlRegistry:
    """Maps ``blob:`` URLs to in-memory audio blobs until they are revoked."""

    def __init__(self, prefix: str = "blob:cclpractice/"):
        self._prefix = prefix
        self._blobs: Dict[str, AudioBlob] = {}
        self._lock = threading.Lock()

    def create(self, blob: AudioBlob) -> str:
        url = f"{self._prefix}{uuid.uuid4()}"
        with self._lock:
            self._blobs[url] = blob
        logger.debug("Created %s (%s bytes)", url, blob.size)
        return url

    def resolve(self, url: str) -> AudioBlob:
        with self._lock:
            return self._blobs[url]

    def revoke(self, url: str | None) -> None:
        if not url:
            return
        with self._lock:
            removed = self._blobs.pop(url, None)
        if removed is not None:
            logger.debug("Revoked %s", url)

    def revoke_all(self) -> None:
        with self._lock:
            count = len(self._blobs)
            self._blobs.clear()
        if count:
            logger.debug("Revoked %s object URLs", count)

    @property
    def active(self) -> List[str]:
        with self._lock:
            return list(self._blobs)
