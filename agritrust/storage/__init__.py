"""
AgriTrust Document Storage

Evidence documents are stored by content address and pinned so they
outlive the settlement that references them.
"""

from agritrust.storage.documents import (
    DocumentStore,
    IPFSDocumentStore,
    LocalDocumentStore,
)

__all__ = ["DocumentStore", "LocalDocumentStore", "IPFSDocumentStore"]
