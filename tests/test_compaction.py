"""
Tests for compacting live values into a single segment.
"""

import os
from pathlib import Path

import pytest

from logkv.storage.engine import Engine
from logkv.storage.errors import SegmentIOError

from conftest import segment_files


class TestCompaction:
    """Tests for Engine.compact."""

    def test_compaction_keeps_latest_values(self, data_dir):
        with Engine(data_dir, max_segment_size=4096) as engine:
            engine.put("a", "one")
            engine.put("b", "two")
            engine.put("a", "three")

            engine.compact()

            assert engine.get("a") == "three"
            assert engine.get("b") == "two"
            assert len(segment_files(data_dir)) == 1

    def test_compaction_drops_overwritten_records(self, engine, data_dir):
        for i in range(10):
            engine.put("a", f"value{i}")
        engine.put("b", "two")

        engine.compact()

        path = data_dir / segment_files(data_dir)[0]
        assert path.stat().st_size == (8 + 1 + 6) + (8 + 1 + 3)

    def test_compaction_removes_every_old_segment(self, small_engine, data_dir):
        for i in range(60):
            small_engine.put(f"key{i % 6}", f"value{i}")
        before = segment_files(data_dir)
        assert len(before) > 1
        expected = {key: small_engine.get(key) for key in small_engine.keys()}

        small_engine.compact()

        after = segment_files(data_dir)
        assert len(after) == 1
        assert after[0] not in before
        assert small_engine.segment_count == 1
        assert {key: small_engine.get(key) for key in small_engine.keys()} == expected

    def test_compacted_segment_takes_next_sequence(self, data_dir):
        with Engine(data_dir, max_segment_size=12) as engine:
            engine.put("a", "one")  # rolls to segment 1
            engine.put("b", "x")
            engine.compact()

        assert segment_files(data_dir) == ["segment-0000000000000000002.log"]
        assert not list(data_dir.glob("*.compacting"))

    def test_empty_index_is_noop(self, engine, data_dir):
        before = segment_files(data_dir)
        engine.compact()
        assert segment_files(data_dir) == before

    def test_writes_after_compaction(self, engine, data_dir):
        engine.put("a", "one")
        engine.compact()
        engine.put("b", "two")
        engine.put("a", "uno")

        assert engine.get("a") == "uno"
        assert engine.get("b") == "two"
        assert len(segment_files(data_dir)) == 1

    def test_repeated_compaction(self, engine, data_dir):
        for round_ in range(3):
            for i in range(5):
                engine.put(f"k{i}", f"r{round_}-{i}")
            engine.compact()

        assert len(segment_files(data_dir)) == 1
        for i in range(5):
            assert engine.get(f"k{i}") == f"r2-{i}"

    def test_failed_promotion_restores_index(self, engine, data_dir, monkeypatch):
        engine.put("a", "one")
        engine.put("b", "two")
        before = segment_files(data_dir)

        def fail_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", fail_replace)
        with pytest.raises(SegmentIOError):
            engine.compact()
        monkeypatch.undo()

        assert engine.get("a") == "one"
        assert engine.get("b") == "two"
        assert segment_files(data_dir) == before
        assert not list(data_dir.glob("*.compacting"))

        engine.compact()
        assert engine.get("a") == "one"
        assert len(segment_files(data_dir)) == 1

    def test_failed_delete_leaves_new_segment_active(self, data_dir, monkeypatch):
        with Engine(data_dir, max_segment_size=12) as engine:
            engine.put("a", "one")  # rolls to segment 1
            engine.put("b", "two")  # rolls to segment 2
            stale = data_dir / "segment-0000000000000000000.log"

            original_unlink = Path.unlink

            def flaky_unlink(self, *args, **kwargs):
                if self == stale:
                    raise PermissionError("read-only")
                return original_unlink(self, *args, **kwargs)

            monkeypatch.setattr(Path, "unlink", flaky_unlink)
            with pytest.raises(SegmentIOError) as exc_info:
                engine.compact()
            monkeypatch.undo()

            assert exc_info.value.path == stale
            assert engine.get("a") == "one"
            assert engine.get("b") == "two"
            assert engine.segment_count == 1
            assert segment_files(data_dir) == [
                "segment-0000000000000000000.log",
                "segment-0000000000000000003.log",
            ]

            engine.put("c", "three")  # rolls to segment 4
            engine.compact()

            assert segment_files(data_dir) == ["segment-0000000000000000005.log"]

        with Engine(data_dir, max_segment_size=12) as engine:
            assert engine.get("a") == "one"
            assert engine.get("b") == "two"
            assert engine.get("c") == "three"

    def test_failed_directory_sync_keeps_old_segments(self, engine, data_dir, monkeypatch):
        engine.put("a", "one")
        engine.put("b", "two")

        def fail_sync():
            raise SegmentIOError("Failed to sync data directory", data_dir)

        monkeypatch.setattr(engine, "_sync_directory", fail_sync)
        with pytest.raises(SegmentIOError):
            engine.compact()
        monkeypatch.undo()

        assert segment_files(data_dir) == [
            "segment-0000000000000000000.log",
            "segment-0000000000000000001.log",
        ]
        assert engine.get("a") == "one"
        assert engine.segment_count == 1

        engine.compact()

        assert segment_files(data_dir) == ["segment-0000000000000000002.log"]
        assert engine.get("b") == "two"
