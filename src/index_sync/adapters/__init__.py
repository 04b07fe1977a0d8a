"""Adapters layer - index engine clients.

Following Cosmic Python Chapter 2: Repository Pattern
The sync engine and the search service depend on ``AbstractIndexClient`` only.
"""

from .http_index_client import HttpIndexClient
from .index_client import AbstractIndexClient, BulkAction, BulkItemResult, WriteAck
from .memory_index_client import InMemoryIndexClient


__all__ = [
    "AbstractIndexClient",
    "BulkAction",
    "BulkItemResult",
    "HttpIndexClient",
    "InMemoryIndexClient",
    "WriteAck",
]
