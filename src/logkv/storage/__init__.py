"""Storage package - Segment files and the key-value engine built on them."""

from .segment import Record, Segment, TRUNCATED
from .engine import Engine, IndexEntry
from .errors import CorruptSegmentError, SegmentIOError, StorageError

__all__ = [
    "Segment",
    "Record",
    "TRUNCATED",
    "Engine",
    "IndexEntry",
    "StorageError",
    "SegmentIOError",
    "CorruptSegmentError",
]
