"""
tests/test_remote_store_client.py

Tests for the HTTP remote store client and the in-memory store.

The HTTP client is exercised against a fake ``requests.Session`` so no
network is touched.
"""

from __future__ import annotations

import base64
import threading
from typing import Any

import pytest
import requests

from app.config import RemoteStoreSettings
from app.connectors.base import build_commit_message
from app.connectors.memory_store import InMemoryRemoteStore
from app.connectors.remote_store import RemoteStoreClient
from app.domain.errors import StoreConflictError, TransientStoreError


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeSession:
    def __init__(self, responses: list[Any]) -> None:
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def request(self, **kwargs: Any) -> FakeResponse:
        self.calls.append(kwargs)
        outcome = self._responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _settings(**overrides: Any) -> RemoteStoreSettings:
    values: dict[str, Any] = {
        "backend": "http",
        "base_url": "https://api.example.test",
        "token": "secret-token",
        "repository": "acme/ledger",
        "branch": "main",
        "path": "data/statement.csv",
        "timeout_seconds": 5.0,
    }
    values.update(overrides)
    return RemoteStoreSettings(**values)


def _encoded(text: str) -> str:
    raw = base64.b64encode(text.encode("utf-8")).decode("ascii")
    # Contents APIs wrap base64 at 60 characters.
    return "\n".join(raw[i : i + 60] for i in range(0, len(raw), 60))


# ---------------------------------------------------------------------------
# RemoteStoreClient.read
# ---------------------------------------------------------------------------


class TestRead:
    def test_decodes_content_and_returns_sha(self) -> None:
        content = "Type,Amount,Started Date\n" + ("x" * 120) + "\n"
        session = FakeSession([FakeResponse(200, {"content": _encoded(content), "sha": "abc123"})])
        client = RemoteStoreClient(settings=_settings(), session=session)

        snapshot = client.read("data/statement.csv")

        assert snapshot.content == content
        assert snapshot.version_token == "abc123"
        assert snapshot.exists is True

        call = session.calls[0]
        assert call["method"] == "GET"
        assert call["url"] == "https://api.example.test/repos/acme/ledger/contents/data/statement.csv"
        assert call["params"] == {"ref": "main"}
        assert call["headers"]["Authorization"] == "Bearer secret-token"
        assert call["headers"]["User-Agent"] == "ledgr-workflow"
        assert call["timeout"] == 5.0

    def test_not_found_is_an_empty_snapshot(self) -> None:
        client = RemoteStoreClient(settings=_settings(), session=FakeSession([FakeResponse(404, {})]))

        snapshot = client.read("data/statement.csv")

        assert snapshot.content == ""
        assert snapshot.version_token is None
        assert snapshot.exists is False

    @pytest.mark.parametrize("status_code", [401, 500, 502, 503])
    def test_other_failures_are_transient(self, status_code: int) -> None:
        session = FakeSession([FakeResponse(status_code, None, text="upstream error")])
        client = RemoteStoreClient(settings=_settings(), session=session)

        with pytest.raises(TransientStoreError) as exc_info:
            client.read("data/statement.csv")
        assert exc_info.value.status_code == status_code
        assert exc_info.value.retryable is True

    def test_network_errors_are_transient(self) -> None:
        session = FakeSession([requests.ConnectionError("connection reset")])
        client = RemoteStoreClient(settings=_settings(), session=session)

        with pytest.raises(TransientStoreError):
            client.read("data/statement.csv")

    def test_undecodable_content_is_transient(self) -> None:
        not_utf8 = base64.b64encode(b"\xff\xfe").decode("ascii")
        session = FakeSession([FakeResponse(200, {"content": not_utf8, "sha": "abc"})])
        client = RemoteStoreClient(settings=_settings(), session=session)

        with pytest.raises(TransientStoreError):
            client.read("data/statement.csv")


# ---------------------------------------------------------------------------
# RemoteStoreClient.write
# ---------------------------------------------------------------------------


class TestWrite:
    def test_sends_encoded_content_with_sha(self) -> None:
        session = FakeSession([FakeResponse(200, {"content": {"sha": "def456"}})])
        client = RemoteStoreClient(settings=_settings(), session=session)

        token = client.write(
            "data/statement.csv",
            "header\nrow\n",
            expected_version_token="abc123",
            message="Update statement: +1 new transactions (1 total)",
        )

        assert token == "def456"
        call = session.calls[0]
        assert call["method"] == "PUT"
        body = call["json"]
        assert base64.b64decode(body["content"]).decode("utf-8") == "header\nrow\n"
        assert body["sha"] == "abc123"
        assert body["branch"] == "main"
        assert body["message"].startswith("Update statement")

    def test_create_omits_sha(self) -> None:
        session = FakeSession([FakeResponse(201, {"content": {"sha": "first"}})])
        client = RemoteStoreClient(settings=_settings(), session=session)

        client.write("data/statement.csv", "header\n", expected_version_token=None, message="init")

        assert "sha" not in session.calls[0]["json"]

    def test_conflict_raises_store_conflict(self) -> None:
        session = FakeSession([FakeResponse(409, {"message": "sha mismatch"})])
        client = RemoteStoreClient(settings=_settings(), session=session)

        with pytest.raises(StoreConflictError) as exc_info:
            client.write("data/statement.csv", "x\n", expected_version_token="stale", message="m")
        assert exc_info.value.retryable is False
        assert exc_info.value.expected_version_token == "stale"

    def test_create_over_existing_path_is_a_conflict(self) -> None:
        session = FakeSession(
            [FakeResponse(422, {"message": "Invalid request.\n\n\"sha\" wasn't supplied."})]
        )
        client = RemoteStoreClient(settings=_settings(), session=session)

        with pytest.raises(StoreConflictError) as exc_info:
            client.write("data/statement.csv", "x\n", expected_version_token=None, message="m")
        assert exc_info.value.retryable is False
        assert exc_info.value.expected_version_token is None
        assert "sha" not in session.calls[0]["json"]

    def test_unprocessable_update_with_token_is_transient(self) -> None:
        session = FakeSession([FakeResponse(422, {"message": "Validation Failed"})])
        client = RemoteStoreClient(settings=_settings(), session=session)

        with pytest.raises(TransientStoreError):
            client.write("data/statement.csv", "x\n", expected_version_token="abc", message="m")

    def test_server_error_is_transient(self) -> None:
        session = FakeSession([FakeResponse(502, None, text="bad gateway")])
        client = RemoteStoreClient(settings=_settings(), session=session)

        with pytest.raises(TransientStoreError):
            client.write("data/statement.csv", "x\n", expected_version_token="abc", message="m")

    def test_timeout_is_transient(self) -> None:
        session = FakeSession([requests.Timeout("read timed out")])
        client = RemoteStoreClient(settings=_settings(), session=session)

        with pytest.raises(TransientStoreError):
            client.write("data/statement.csv", "x\n", expected_version_token="abc", message="m")


def test_client_requires_repository() -> None:
    with pytest.raises(ValueError):
        RemoteStoreClient(settings=_settings(repository=None), session=FakeSession([]))


def test_commit_message_format() -> None:
    assert build_commit_message(new_row_count=2, total_row_count=5) == (
        "Update statement: +2 new transactions (5 total)"
    )


# ---------------------------------------------------------------------------
# InMemoryRemoteStore
# ---------------------------------------------------------------------------


class TestInMemoryRemoteStore:
    def test_missing_blob_reads_empty(self) -> None:
        store = InMemoryRemoteStore()
        assert store.read("a.csv").exists is False

    def test_write_then_read(self) -> None:
        store = InMemoryRemoteStore()
        token = store.write("a.csv", "h\n", expected_version_token=None, message="create")

        snapshot = store.read("a.csv")
        assert snapshot.content == "h\n"
        assert snapshot.version_token == token
        assert store.commit_messages("a.csv") == ["create"]

    def test_stale_token_conflicts_and_leaves_content(self) -> None:
        store = InMemoryRemoteStore()
        first = store.write("a.csv", "v1\n", expected_version_token=None, message="create")
        store.write("a.csv", "v2\n", expected_version_token=first, message="update")

        with pytest.raises(StoreConflictError):
            store.write("a.csv", "lost\n", expected_version_token=first, message="late")
        assert store.read("a.csv").content == "v2\n"

    def test_create_conflicts_when_blob_exists(self) -> None:
        store = InMemoryRemoteStore()
        store.write("a.csv", "v1\n", expected_version_token=None, message="create")
        with pytest.raises(StoreConflictError):
            store.write("a.csv", "v1b\n", expected_version_token=None, message="create again")

    def test_paths_do_not_contend(self) -> None:
        store = InMemoryRemoteStore()
        store.write("a.csv", "a\n", expected_version_token=None, message="a")
        store.write("b.csv", "b\n", expected_version_token=None, message="b")
        assert store.read("a.csv").content == "a\n"
        assert store.read("b.csv").content == "b\n"

    def test_concurrent_writers_from_same_base_get_one_success(self) -> None:
        store = InMemoryRemoteStore()
        base = store.write("a.csv", "base\n", expected_version_token=None, message="create")

        writers = 8
        barrier = threading.Barrier(writers)
        successes: list[str] = []
        conflicts: list[StoreConflictError] = []
        lock = threading.Lock()

        def _attempt(index: int) -> None:
            barrier.wait()
            try:
                store.write("a.csv", f"writer-{index}\n", expected_version_token=base, message=str(index))
            except StoreConflictError as exc:
                with lock:
                    conflicts.append(exc)
            else:
                with lock:
                    successes.append(f"writer-{index}\n")

        threads = [threading.Thread(target=_attempt, args=(i,)) for i in range(writers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(successes) == 1
        assert len(conflicts) == writers - 1
        assert store.read("a.csv").content == successes[0]
