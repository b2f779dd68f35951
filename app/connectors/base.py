"""
app/connectors/base.py

Remote store abstraction shared by the HTTP and in-memory backends.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from app.domain.statement import StoreSnapshot

NOT_FOUND_STATUS_CODE = 404
CONFLICT_STATUS_CODE = 409
# Contents API answer to a create without "sha" when the path already exists.
CREATE_EXISTS_STATUS_CODE = 422


class RemoteStore(ABC):
    """
    Versioned blob store with optimistic-concurrency writes.
    """

    @abstractmethod
    def read(self, path: str) -> StoreSnapshot:
        """
        Return the current snapshot; a missing blob yields an empty snapshot.

        Raises TransientStoreError for any other failure.
        """

    @abstractmethod
    def write(
        self,
        path: str,
        content: str,
        *,
        expected_version_token: str | None,
        message: str,
    ) -> str:
        """
        Write ``content`` when the blob is still at ``expected_version_token``.

        ``expected_version_token=None`` means the blob must not yet exist.
        Returns the new version token.

        Raises StoreConflictError on a stale token and TransientStoreError
        for any other failure.
        """


def build_commit_message(*, new_row_count: int, total_row_count: int) -> str:
    return f"Update statement: +{new_row_count} new transactions ({total_row_count} total)"
