"""
app/connectors package marker.
"""

from app.connectors.base import RemoteStore, build_commit_message
from app.connectors.memory_store import InMemoryRemoteStore
from app.connectors.remote_store import RemoteStoreClient, get_remote_store

__all__ = [
    "InMemoryRemoteStore",
    "RemoteStore",
    "RemoteStoreClient",
    "build_commit_message",
    "get_remote_store",
]
