"""
Segment - A single append-only file of key/value records.

Binary Format:
  Each record consists of:
  1. Key Length (4 bytes, big-endian signed int): Size of the key
  2. Value Length (4 bytes, big-endian signed int): Size of the value
  3. Key (variable length): The raw key bytes
  4. Value (variable length): The raw value bytes

  There is no file header, footer, or checksum. A record whose declared
  lengths run past the end of the file is a torn write from a crash and
  marks the end of the readable data.
"""

import logging
import os
import struct
from pathlib import Path
from typing import BinaryIO, Iterator, NamedTuple, Optional, Union

from .errors import SegmentIOError

logger = logging.getLogger(__name__)


class _Truncated:
    """Sentinel type for a record that runs past the end of the file."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "TRUNCATED"


TRUNCATED = _Truncated()


class Record(NamedTuple):
    """A decoded record and where it lives in the segment."""

    offset: int
    key: bytes
    value: bytes

    @property
    def end(self) -> int:
        return self.offset + Segment.HEADER_SIZE + len(self.key) + len(self.value)


class Segment:
    """
    Manages a single segment file.

    A segment only knows how to frame, append, and read records. Which key
    a record belongs to and whether it is still live is the engine's concern.
    """

    # ">" = big-endian, "i" = signed 4-byte int; key length then value length
    HEADER_FMT = ">ii"
    HEADER_SIZE = struct.calcsize(HEADER_FMT)

    def __init__(self, path: Union[str, Path], file: BinaryIO):
        self.path = Path(path)
        self._file: Optional[BinaryIO] = file
        self.valid_end = 0

    @classmethod
    def create(cls, path: Union[str, Path]) -> "Segment":
        """
        Create a new, empty segment at ``path``.

        Any existing file at ``path`` is truncated.

        Raises:
            SegmentIOError: If the file cannot be opened for read/write
        """
        try:
            file = open(path, "w+b")
        except OSError as e:
            raise SegmentIOError("Failed to create segment", path) from e
        logger.debug("Created segment %s", path)
        return cls(path, file)

    @classmethod
    def open(cls, path: Union[str, Path]) -> "Segment":
        """
        Attach to an existing segment file without truncating it.

        Raises:
            SegmentIOError: If the file does not exist or cannot be opened
        """
        try:
            file = open(path, "r+b")
        except OSError as e:
            raise SegmentIOError("Failed to open segment", path) from e
        logger.debug("Opened segment %s", path)
        return cls(path, file)

    @property
    def closed(self) -> bool:
        return self._file is None

    def _handle(self) -> BinaryIO:
        if self._file is None:
            raise SegmentIOError("Segment is closed", self.path)
        return self._file

    def append(self, key: bytes, value: bytes) -> int:
        """
        Append one record at the end of the file and sync it to disk.

        Args:
            key: The raw key bytes
            value: The raw value bytes

        Returns:
            The byte offset at which the record starts
        """
        file = self._handle()
        header = struct.pack(self.HEADER_FMT, len(key), len(value))
        offset = None
        try:
            offset = file.seek(0, os.SEEK_END)
            file.write(header + key + value)
            file.flush()
            os.fsync(file.fileno())
        except OSError as e:
            if offset is not None:
                self._discard_tail(offset)
            raise SegmentIOError("Failed to append to segment", self.path) from e
        return offset

    def _discard_tail(self, offset: int):
        # Drop whatever part of a failed record reached the file
        try:
            self._file.truncate(offset)
        except OSError as e:
            logger.warning(
                "Could not remove partial record at offset %d in %s: %s",
                offset, self.path, e,
            )

    def size(self) -> int:
        """Current length of the file in bytes."""
        try:
            return os.fstat(self._handle().fileno()).st_size
        except OSError as e:
            raise SegmentIOError("Failed to stat segment", self.path) from e

    def read_record_at(self, offset: int):
        """
        Decode the record starting at ``offset``.

        Returns:
            A ``Record``, or ``TRUNCATED`` if the header or body would run
            past the end of the file
        """
        file = self._handle()
        try:
            file.seek(offset)
            header = file.read(self.HEADER_SIZE)
            if len(header) < self.HEADER_SIZE:
                return TRUNCATED

            key_len, value_len = struct.unpack(self.HEADER_FMT, header)
            if key_len < 0 or value_len < 0:
                return TRUNCATED

            key = file.read(key_len)
            if len(key) < key_len:
                return TRUNCATED
            value = file.read(value_len)
            if len(value) < value_len:
                return TRUNCATED
        except OSError as e:
            raise SegmentIOError("Failed to read segment", self.path) from e

        return Record(offset, key, value)

    def read_at(self, offset: int):
        """
        Read the value of the record starting at ``offset``.

        Returns:
            The value bytes, or ``TRUNCATED``
        """
        record = self.read_record_at(offset)
        if record is TRUNCATED:
            return TRUNCATED
        return record.value

    def records(self) -> Iterator[Record]:
        """
        Scan the segment from the start, yielding each complete record.

        Stops quietly at the end of file or at the first truncated record.
        ``valid_end`` is left pointing just past the last record yielded.
        """
        offset = 0
        self.valid_end = 0
        end_of_file = self.size()

        while offset < end_of_file:
            record = self.read_record_at(offset)
            if record is TRUNCATED:
                logger.debug(
                    "Truncated record at offset %d in %s", offset, self.path
                )
                break
            offset = record.end
            self.valid_end = offset
            yield record

    def __iter__(self) -> Iterator[Record]:
        return self.records()

    def truncate(self, length: int):
        """Cut the file back to ``length`` bytes and sync."""
        file = self._handle()
        try:
            file.truncate(length)
            file.flush()
            os.fsync(file.fileno())
        except OSError as e:
            raise SegmentIOError("Failed to truncate segment", self.path) from e

    def close(self):
        """Close the file handle. Safe to call more than once."""
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - ensures the file is closed."""
        self.close()
        return False

    def __repr__(self):
        return f"Segment(path='{self.path}', closed={self.closed})"
