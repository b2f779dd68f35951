"""
app/connectors/memory_store.py

Process-local versioned store for development runs and tests.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, field

from app.connectors.base import RemoteStore
from app.domain.errors import StoreConflictError
from app.domain.statement import StoreSnapshot

logger = logging.getLogger(__name__)


@dataclass
class _Blob:
    content: str
    version_token: str
    history: list[str] = field(default_factory=list)


class InMemoryRemoteStore(RemoteStore):
    """
    Compare-and-set blob store; version tokens are content-derived sha1 digests
    salted with the revision number.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blobs: dict[str, _Blob] = {}
        self._revision = 0

    def read(self, path: str) -> StoreSnapshot:
        with self._lock:
            blob = self._blobs.get(path)
            if blob is None:
                return StoreSnapshot(content="", version_token=None)
            return StoreSnapshot(content=blob.content, version_token=blob.version_token)

    def write(
        self,
        path: str,
        content: str,
        *,
        expected_version_token: str | None,
        message: str,
    ) -> str:
        with self._lock:
            blob = self._blobs.get(path)
            current_token = blob.version_token if blob is not None else None
            if current_token != expected_version_token:
                raise StoreConflictError(
                    f"Remote store rejected write to {path}: version {expected_version_token!r} is stale.",
                    path=path,
                    expected_version_token=expected_version_token,
                )

            self._revision += 1
            new_token = hashlib.sha1(f"{self._revision}:{content}".encode("utf-8")).hexdigest()
            history = blob.history if blob is not None else []
            history.append(message)
            self._blobs[path] = _Blob(content=content, version_token=new_token, history=history)

        logger.info("In-memory store write path=%s version=%s", path, new_token)
        return new_token

    def commit_messages(self, path: str) -> list[str]:
        with self._lock:
            blob = self._blobs.get(path)
            return list(blob.history) if blob is not None else []
