"""
Shared pytest fixtures for the storage engine tests.
"""

import errno

import pytest

from logkv.storage.engine import Engine


def segment_files(data_dir):
    """Names of the segment files in ``data_dir``, oldest first."""
    return sorted(p.name for p in data_dir.glob("segment-*.log"))


class FailingWrites:
    """
    Wraps a segment file so its first write stores half the bytes and then
    fails with ENOSPC, the way a full disk tears a record.
    """

    def __init__(self, file, fail_truncate=False):
        self._file = file
        self._fail_truncate = fail_truncate
        self.failed = False

    def write(self, data):
        if not self.failed:
            self.failed = True
            self._file.write(data[: len(data) // 2])
            self._file.flush()
            raise OSError(errno.ENOSPC, "No space left on device")
        return self._file.write(data)

    def truncate(self, size=None):
        if self._fail_truncate:
            raise OSError(errno.EIO, "Input/output error")
        return self._file.truncate(size)

    def __getattr__(self, name):
        return getattr(self._file, name)


@pytest.fixture
def data_dir(tmp_path):
    """Provide a data directory that does not exist yet."""
    return tmp_path / "data"


@pytest.fixture
def engine(data_dir):
    """Provide an Engine with 4KB segments."""
    with Engine(data_dir, max_segment_size=4096) as eng:
        yield eng


@pytest.fixture
def small_engine(data_dir):
    """Provide an Engine with a tiny threshold so segments roll often."""
    with Engine(data_dir, max_segment_size=64) as eng:
        yield eng
