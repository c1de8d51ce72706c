"""In-memory data client for hosts and tests."""

from .memory_client import InMemoryDataClient, InMemoryModelDelegate, QueryLog

__all__ = ["InMemoryDataClient", "InMemoryModelDelegate", "QueryLog"]
