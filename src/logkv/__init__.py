"""
logkv - An embedded, log-structured key-value store.

Writes are appended to segment files on disk and an in-memory index maps
each key to its most recent value. Compaction rewrites only the live values
into a fresh segment.
"""

__version__ = "1.0.0"
__author__ = "logkv Contributors"
__license__ = "MIT"

from .config import EngineConfig
from .storage.engine import Engine
from .storage.errors import CorruptSegmentError, SegmentIOError, StorageError

__all__ = [
    "Engine",
    "EngineConfig",
    "StorageError",
    "SegmentIOError",
    "CorruptSegmentError",
]
