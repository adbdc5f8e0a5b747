"""
Exceptions raised by the storage layer.
"""

from pathlib import Path
from typing import Optional, Union


class StorageError(Exception):
    """Base class for every error surfaced by the store."""


class SegmentIOError(StorageError):
    """
    Raised when the underlying storage fails while creating, opening,
    appending to, reading, or deleting a segment file.

    The original ``OSError`` is chained as ``__cause__``.
    """

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else None
        if self.path is not None:
            message = f"{message} ({self.path})"
        super().__init__(message)


class CorruptSegmentError(StorageError):
    """
    Raised when an index pointer resolves to a record that cannot be read
    back in full. The index only ever points at complete records, so this
    means the segment file changed underneath the engine.
    """

    def __init__(self, path: Union[str, Path], offset: int):
        self.path = Path(path)
        self.offset = offset
        super().__init__(f"Truncated record at offset {offset} in {self.path}")
