"""
app/connectors/remote_store.py

HTTP client for a contents-style versioned file API.

Blob content travels base64-encoded; the version token is the blob sha.
The client performs exactly one request per call. Retrying is the step
engine's job, so transient failures surface as TransientStoreError.
"""

from __future__ import annotations

import base64
import binascii
import logging
from functools import lru_cache
from typing import Any
from urllib.parse import quote

import requests

from app.config import RemoteStoreSettings, get_remote_store_settings
from app.connectors.base import (
    CONFLICT_STATUS_CODE,
    CREATE_EXISTS_STATUS_CODE,
    NOT_FOUND_STATUS_CODE,
    RemoteStore,
)
from app.connectors.memory_store import InMemoryRemoteStore
from app.domain.errors import StoreConflictError, TransientStoreError
from app.domain.statement import StoreSnapshot

logger = logging.getLogger(__name__)

_ERROR_BODY_PREVIEW = 500


class RemoteStoreClient(RemoteStore):
    """
    Reads and conditionally writes one repository file over HTTP.
    """

    def __init__(
        self,
        *,
        settings: RemoteStoreSettings,
        session: requests.Session | None = None,
    ) -> None:
        if not settings.repository:
            raise ValueError("RemoteStoreClient requires a repository.")
        self._base_url = settings.base_url.rstrip("/")
        self._repository = settings.repository
        self._branch = settings.branch
        self._token = settings.token
        self._timeout_seconds = settings.timeout_seconds
        self._user_agent = settings.user_agent
        self._session = session or requests.Session()

    def read(self, path: str) -> StoreSnapshot:
        response = self._request(
            method="GET",
            url=self._contents_url(path),
            params={"ref": self._branch},
        )

        if response.status_code == NOT_FOUND_STATUS_CODE:
            logger.info("Remote store blob not found path=%s branch=%s", path, self._branch)
            return StoreSnapshot(content="", version_token=None)
        if not response.ok:
            raise self._transient(response, action="read", path=path)

        payload = self._json(response, action="read", path=path)
        encoded = payload.get("content")
        version_token = payload.get("sha")
        if not isinstance(encoded, str) or not isinstance(version_token, str):
            raise TransientStoreError(
                f"Remote store read returned an incomplete payload for {path}.",
                status_code=response.status_code,
            )

        try:
            content = base64.b64decode(encoded.replace("\n", "")).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise TransientStoreError(
                f"Remote store content for {path} could not be decoded.",
                status_code=response.status_code,
            ) from exc

        return StoreSnapshot(content=content, version_token=version_token)

    def write(
        self,
        path: str,
        content: str,
        *,
        expected_version_token: str | None,
        message: str,
    ) -> str:
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": self._branch,
        }
        if expected_version_token:
            body["sha"] = expected_version_token

        response = self._request(method="PUT", url=self._contents_url(path), json_body=body)

        if response.status_code == CONFLICT_STATUS_CODE or (
            response.status_code == CREATE_EXISTS_STATUS_CODE and not expected_version_token
        ):
            logger.warning(
                "Remote store write conflict path=%s expected_version=%s status=%s",
                path,
                expected_version_token,
                response.status_code,
            )
            if expected_version_token:
                reason = f"version {expected_version_token!r} is stale"
            else:
                reason = "it was created by another writer"
            raise StoreConflictError(
                f"Remote store rejected write to {path}: {reason}.",
                path=path,
                expected_version_token=expected_version_token,
            )
        if not response.ok:
            raise self._transient(response, action="write", path=path)

        payload = self._json(response, action="write", path=path)
        new_token = (payload.get("content") or {}).get("sha")
        if not isinstance(new_token, str):
            raise TransientStoreError(
                f"Remote store write to {path} returned no version token.",
                status_code=response.status_code,
            )
        return new_token

    def _request(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> requests.Response:
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": self._user_agent,
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            return self._session.request(
                method=method,
                url=url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self._timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            logger.warning("Remote store request failed method=%s url=%s error=%s", method, url, exc)
            raise TransientStoreError(f"Remote store {method} {url} failed: {exc}") from exc

    def _contents_url(self, path: str) -> str:
        return f"{self._base_url}/repos/{self._repository}/contents/{quote(path.lstrip('/'))}"

    @staticmethod
    def _json(response: requests.Response, *, action: str, path: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientStoreError(
                f"Remote store {action} for {path} returned invalid JSON.",
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise TransientStoreError(
                f"Remote store {action} for {path} returned an unexpected payload.",
                status_code=response.status_code,
            )
        return payload

    @staticmethod
    def _transient(response: requests.Response, *, action: str, path: str) -> TransientStoreError:
        preview = (response.text or "")[:_ERROR_BODY_PREVIEW]
        logger.warning(
            "Remote store %s failed path=%s status=%s body=%s",
            action,
            path,
            response.status_code,
            preview,
        )
        return TransientStoreError(
            f"Remote store {action} failed for {path}: {response.status_code} {preview}",
            status_code=response.status_code,
        )


@lru_cache(maxsize=1)
def get_remote_store() -> RemoteStore:
    """
    Build and cache the configured remote store backend.
    """

    settings = get_remote_store_settings()
    if settings.backend == "memory":
        return InMemoryRemoteStore()
    return RemoteStoreClient(settings=settings)
