"""
Engine - A log-structured key-value store over a directory of segments.

The Engine is responsible for:
1. Appending writes to the active segment and rolling it when it grows
   past the size limit
2. Keeping an in-memory index of key -> (segment, offset) for the latest
   write of every key
3. Rebuilding that index on startup by replaying every segment oldest-first
4. Compacting all live values into a single fresh segment

Segment files are named ``segment-<N>.log`` where ``<N>`` is a zero-padded
sequence number, so sorting by name is the same as sorting by creation.
"""

import logging
import os
import re
import threading
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Union

from .errors import CorruptSegmentError, SegmentIOError, StorageError
from .segment import TRUNCATED, Segment

logger = logging.getLogger(__name__)


class IndexEntry(NamedTuple):
    """Location of the most recent record for a key."""

    segment: Segment
    offset: int


def _encode(name: str, text: str) -> bytes:
    if not isinstance(text, str):
        raise TypeError(f"{name} must be str, got {type(text).__name__}")
    return text.encode("utf-8")


class Engine:
    """
    Embedded key-value store backed by append-only segment files.

    ``put``, ``get`` and ``compact`` share one lock, so at most one of them
    runs at a time no matter how many threads use the engine.
    """

    # Roll to a new segment once the active one reaches this many bytes
    SEGMENT_SIZE_LIMIT = 16 * 1024  # 16KB

    SEGMENT_PREFIX = "segment-"
    SEGMENT_SUFFIX = ".log"
    COMPACTING_SUFFIX = ".compacting"

    # Record lengths are stored as signed 32-bit integers
    MAX_FIELD_SIZE = 2 ** 31 - 1
    _SEGMENT_NAME = re.compile(r"^segment-(\d+)\.log$")

    def __init__(self, data_dir: Union[str, Path] = "data",
                 max_segment_size: Optional[int] = None):
        """
        Open (or create) a store in ``data_dir``.

        Args:
            data_dir: Directory holding the segment files, created if missing
            max_segment_size: Override the default rollover threshold in bytes

        Raises:
            SegmentIOError: If existing segments cannot be opened or read
        """
        if max_segment_size is None:
            max_segment_size = self.SEGMENT_SIZE_LIMIT
        if max_segment_size <= 0:
            raise ValueError(
                f"max_segment_size must be positive, got {max_segment_size}"
            )

        self.data_dir = Path(data_dir)
        self.max_segment_size = max_segment_size

        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SegmentIOError("Failed to create data directory", self.data_dir) from e

        self._lock = threading.Lock()
        self._index: Dict[bytes, IndexEntry] = {}
        self._sealed: List[Segment] = []
        self._active: Optional[Segment] = None
        self._stale: List[Path] = []
        self._next_sequence = 0
        self._closed = False

        try:
            self._load_segments()
            if self._active is None:
                self._create_active()
        except BaseException:
            self._close_segments()
            raise

    @classmethod
    def from_config(cls, config) -> "Engine":
        """Build an engine from an ``EngineConfig``."""
        return cls(config.data_dir, max_segment_size=config.max_segment_size)

    # -- naming -------------------------------------------------------------

    def _segment_path(self, sequence: int) -> Path:
        return self.data_dir / f"{self.SEGMENT_PREFIX}{sequence:019d}{self.SEGMENT_SUFFIX}"

    @classmethod
    def _sequence_of(cls, path: Path) -> Optional[int]:
        match = cls._SEGMENT_NAME.match(path.name)
        return int(match.group(1)) if match else None

    def _take_sequence(self) -> int:
        sequence = self._next_sequence
        self._next_sequence += 1
        return sequence

    # -- recovery -----------------------------------------------------------

    def _load_segments(self):
        """
        Adopt the segment files already in the data directory.

        Every segment is replayed into the index in creation order so a later
        record for a key replaces an earlier one. The newest segment becomes
        the active one.
        """
        for leftover in sorted(self.data_dir.glob(f"*{self.SEGMENT_SUFFIX}{self.COMPACTING_SUFFIX}")):
            logger.warning("Removing unfinished compaction output %s", leftover)
            try:
                leftover.unlink()
            except OSError as e:
                raise SegmentIOError("Failed to remove compaction leftover", leftover) from e

        paths = [
            p for p in self.data_dir.glob(f"{self.SEGMENT_PREFIX}*{self.SEGMENT_SUFFIX}")
            if self._sequence_of(p) is not None
        ]
        if not paths:
            return

        paths.sort(key=self._sequence_of)
        for path in paths:
            segment = Segment.open(path)
            self._sealed.append(segment)
            self._replay(segment)

        self._active = self._sealed.pop()
        self._next_sequence = self._sequence_of(self._active.path) + 1

        # Appends after a torn tail would be unreachable on the next replay
        torn = self._active.size() - self._active.valid_end
        if torn > 0:
            logger.warning(
                "Discarding %d bytes of incomplete record at the end of %s",
                torn, self._active.path,
            )
            self._active.truncate(self._active.valid_end)

        logger.info(
            "Recovered %d keys from %d segments in %s",
            len(self._index), len(paths), self.data_dir,
        )

    def _replay(self, segment: Segment):
        count = 0
        for record in segment:
            self._index[record.key] = IndexEntry(segment, record.offset)
            count += 1

        if segment.valid_end < segment.size():
            logger.warning(
                "Ignoring incomplete record at offset %d in %s",
                segment.valid_end, segment.path,
            )
        logger.debug("Replayed %d records from %s", count, segment.path)

    # -- segment lifecycle --------------------------------------------------

    def _create_active(self):
        self._active = Segment.create(self._segment_path(self._take_sequence()))

    def _ensure_active(self) -> Segment:
        if self._active is None:
            self._create_active()
        return self._active

    def _roll_segment(self):
        """Seal the active segment and start a fresh one."""
        logger.info(
            "Rolling segment %s at %d bytes", self._active.path, self._active.size()
        )
        self._sealed.append(self._active)
        self._active = None
        self._create_active()

    def _sync_directory(self):
        # Directory fsync makes the rename durable; not available on Windows
        if not hasattr(os, "O_DIRECTORY"):
            return
        try:
            fd = os.open(self.data_dir, os.O_RDONLY | os.O_DIRECTORY)
            try:
                os.fsync(fd)
            finally:
                os.close(fd)
        except OSError as e:
            raise SegmentIOError("Failed to sync data directory", self.data_dir) from e

    def _check_open(self):
        if self._closed:
            raise StorageError("Engine is closed")

    # -- public API ---------------------------------------------------------

    def put(self, key: str, value: str):
        """
        Write ``value`` for ``key``.

        Overwriting a key appends a new record; the old one is reclaimed only
        by ``compact``.

        Raises:
            ValueError: If the key or value is too long to frame
            SegmentIOError: If the record cannot be written. The active
                segment is sealed and the next write starts a new one.
        """
        key_bytes = _encode("key", key)
        value_bytes = _encode("value", value)
        for name, data in (("key", key_bytes), ("value", value_bytes)):
            if len(data) > self.MAX_FIELD_SIZE:
                raise ValueError(
                    f"{name} is {len(data)} bytes, limit is {self.MAX_FIELD_SIZE}"
                )

        with self._lock:
            self._check_open()
            active = self._ensure_active()
            try:
                offset = active.append(key_bytes, value_bytes)
            except SegmentIOError:
                # A partial record may still sit at the tail; never write past it
                logger.error("Sealing %s after a failed append", active.path)
                self._sealed.append(active)
                self._active = None
                raise
            self._index[key_bytes] = IndexEntry(active, offset)

            if active.size() >= self.max_segment_size:
                self._roll_segment()

    def get(self, key: str) -> Optional[str]:
        """
        Return the current value for ``key``, or None if it was never written.

        Raises:
            CorruptSegmentError: If the indexed record cannot be read back
            SegmentIOError: If the segment cannot be read
        """
        key_bytes = _encode("key", key)

        with self._lock:
            self._check_open()
            entry = self._index.get(key_bytes)
            if entry is None:
                return None
            return self._read_entry(entry).decode("utf-8")

    def _read_entry(self, entry: IndexEntry) -> bytes:
        value = entry.segment.read_at(entry.offset)
        if value is TRUNCATED:
            raise CorruptSegmentError(entry.segment.path, entry.offset)
        return value

    def compact(self):
        """
        Rewrite the latest value of every key into one new segment and delete
        all the older segments.

        The new segment takes the next sequence number. It is written under a
        temporary name and renamed into place before anything is deleted, so
        a crash at any point leaves a directory that recovers to the same
        values.

        Raises:
            SegmentIOError: If writing the new segment or deleting an old one
                fails. A failed delete leaves the new segment active and the
                stale file on disk; the next compaction retries the delete.
        """
        with self._lock:
            self._check_open()
            if not self._index:
                logger.debug("Nothing to compact")
                return

            sequence = self._take_sequence()
            final_path = self._segment_path(sequence)
            temp_path = final_path.with_name(final_path.name + self.COMPACTING_SUFFIX)
            previous_index = dict(self._index)

            compacted = Segment.create(temp_path)
            try:
                for key, entry in previous_index.items():
                    offset = compacted.append(key, self._read_entry(entry))
                    self._index[key] = IndexEntry(compacted, offset)

                try:
                    os.replace(temp_path, final_path)
                except OSError as e:
                    raise SegmentIOError("Failed to promote compacted segment", final_path) from e
            except BaseException:
                # Old segments are untouched, so point the index back at them
                self._index = previous_index
                compacted.close()
                if temp_path.exists():
                    temp_path.unlink()
                raise

            compacted.path = final_path
            retired = self._sealed
            if self._active is not None:
                retired.append(self._active)
            self._sealed = []
            self._active = compacted

            for segment in retired:
                segment.close()
            # Leftovers from an earlier compaction whose cleanup failed
            obsolete = self._stale + [segment.path for segment in retired]
            self._stale = []

            try:
                self._sync_directory()
            except SegmentIOError:
                # The rename may not be durable yet, so keep the old files
                self._stale = obsolete
                raise

            logger.info(
                "Compacted %d keys from %d segments into %s (%d bytes)",
                len(self._index), len(retired), final_path, compacted.size(),
            )
            self._delete_segments(obsolete)

    def _delete_segments(self, paths: List[Path]):
        failures = []
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error("Failed to delete segment %s: %s", path, e)
                failures.append((path, e))

        self._stale = [path for path, _ in failures]
        if failures:
            path, error = failures[0]
            raise SegmentIOError(
                f"Failed to delete {len(failures)} old segment(s)", path
            ) from error

    # -- introspection ------------------------------------------------------

    def keys(self) -> List[str]:
        """All keys currently in the index."""
        with self._lock:
            self._check_open()
            return [key.decode("utf-8") for key in self._index]

    def __len__(self):
        with self._lock:
            self._check_open()
            return len(self._index)

    def __contains__(self, key):
        if not isinstance(key, str):
            return False
        with self._lock:
            self._check_open()
            return key.encode("utf-8") in self._index

    @property
    def segment_count(self) -> int:
        """Total number of segments (active + sealed)."""
        with self._lock:
            return self._segment_count()

    def _segment_count(self) -> int:
        count = len(self._sealed)
        if self._active is not None:
            count += 1
        return count

    def get_segment_info(self) -> dict:
        """
        Describe the store and every segment it owns.

        Returns:
            Dictionary with store totals and one entry per segment
        """
        with self._lock:
            self._check_open()
            info = {
                "data_dir": str(self.data_dir),
                "max_segment_size": self.max_segment_size,
                "keys": len(self._index),
                "total_segments": self._segment_count(),
                "segments": [],
            }

            segments = [(s, "sealed") for s in self._sealed]
            if self._active is not None:
                segments.append((self._active, "active"))

            for segment, status in segments:
                info["segments"].append({
                    "sequence": self._sequence_of(segment.path),
                    "path": str(segment.path),
                    "size_bytes": segment.size(),
                    "status": status,
                })

            return info

    # -- teardown -----------------------------------------------------------

    def _close_segments(self):
        for segment in self._sealed:
            segment.close()
        if self._active is not None:
            self._active.close()

    def close(self):
        """Release every segment file handle. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._close_segments()
            self._closed = True

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - ensures all segments are closed."""
        self.close()
        return False

    def __repr__(self):
        with self._lock:
            return (
                f"Engine(data_dir='{self.data_dir}', "
                f"segments={self._segment_count()}, keys={len(self._index)}, "
                f"closed={self._closed})"
            )
