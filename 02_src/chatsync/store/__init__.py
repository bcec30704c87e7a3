"""Remote store: key-path documents, changefeeds and blob storage."""

from .blobs import FileBlobStorage, HttpBlobStorage, IBlobStorage
from .changefeed import Changefeed, IChangefeed, Subscription, join_path
from .document_store import (
    CONNECTED_PATH,
    SERVER_TIMESTAMP,
    DocumentStore,
    IDocumentStore,
    Snapshot,
)

__all__ = [
    "CONNECTED_PATH",
    "SERVER_TIMESTAMP",
    "Changefeed",
    "DocumentStore",
    "FileBlobStorage",
    "HttpBlobStorage",
    "IBlobStorage",
    "IChangefeed",
    "IDocumentStore",
    "Snapshot",
    "Subscription",
    "join_path",
]
