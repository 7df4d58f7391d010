"""
Local key-value storage for the analytics queue.

File-backed for the durable queue mirror, in-memory for session data.
"""

from .stores import FileKeyValueStore, MemoryKeyValueStore

__all__ = ["FileKeyValueStore", "MemoryKeyValueStore"]
