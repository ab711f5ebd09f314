# Copyright 2026. Tests for drydock.core.state.

import json
import os
import threading
from dataclasses import dataclass

import pytest

from drydock.core.errors import CorruptError, NotFoundError, StorageError
from drydock.core.state import (
    LockedStateManager,
    atomic_write_json,
    file_lock,
    iso_from_epoch,
    parse_iso,
    read_json,
)


@dataclass
class Counter:
    value: int = 0


def _counter_to_dict(c: Counter) -> dict:
    return {"value": c.value}


def _dict_to_counter(d: dict) -> Counter:
    return Counter(value=int(d["value"]))


class TestTimestamps:
    def test_round_trip_epoch(self):
        assert parse_iso(iso_from_epoch(1_700_000_000)) == 1_700_000_000

    def test_accepts_offset_form(self):
        assert parse_iso("2026-01-01T00:00:00+00:00") == parse_iso("2026-01-01T00:00:00Z")

    @pytest.mark.parametrize("value", ["", "yesterday", None, 42])
    def test_unparsable_is_none(self, value):
        assert parse_iso(value) is None


class TestAtomicWriteJson:
    def test_writes_object(self, tmp_path):
        path = tmp_path / "a" / "b.json"
        atomic_write_json(path, {"x": 1})
        assert json.loads(path.read_text()) == {"x": 1}

    def test_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "rec.json"
        atomic_write_json(path, {"x": 1})
        atomic_write_json(path, {"x": 2})
        assert [p.name for p in tmp_path.iterdir()] == ["rec.json"]

    def test_unwritable_directory_raises_storage_error(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a dir")
        with pytest.raises(StorageError):
            atomic_write_json(blocker / "rec.json", {"x": 1})

    def test_storage_error_is_oserror(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        with pytest.raises(OSError):
            atomic_write_json(blocker / "rec.json", {})


class TestReadJson:
    def test_missing(self, tmp_path):
        with pytest.raises(NotFoundError) as exc:
            read_json(tmp_path / "nope.json", "thing", "nope")
        assert not isinstance(exc.value, CorruptError)
        assert "thing not found: nope" in str(exc.value)

    def test_truncated_is_corrupt(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text('{"value": ')
        with pytest.raises(CorruptError) as exc:
            read_json(path, "thing", "bad")
        assert exc.value.path == str(path)

    def test_non_object_is_corrupt(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text("[1, 2]")
        with pytest.raises(CorruptError):
            read_json(path, "thing", "list")

    def test_corrupt_is_a_not_found(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("garbage")
        with pytest.raises(NotFoundError):
            read_json(path, "thing", "bad")


class TestFileLock:
    def test_creates_lock_file(self, tmp_path):
        lock = tmp_path / "sub" / "x.lock"
        with file_lock(lock):
            assert lock.exists()

    def test_shared_locks_coexist(self, tmp_path):
        lock = tmp_path / "x.lock"
        with file_lock(lock, shared=True):
            with file_lock(lock, shared=True):
                pass


class TestLockedStateManager:
    def _mgr(self, tmp_path):
        return LockedStateManager(tmp_path / "counter.json", _counter_to_dict, _dict_to_counter, kind="counter")

    def test_save_and_load(self, tmp_path):
        mgr = self._mgr(tmp_path)
        assert not mgr.exists()
        mgr.save(Counter(3))
        assert mgr.exists()
        assert mgr.load().value == 3

    def test_update_returns_mutated_state(self, tmp_path):
        mgr = self._mgr(tmp_path)
        mgr.save(Counter(1))
        result = mgr.update(lambda c: setattr(c, "value", c.value + 1))
        assert result.value == 2
        assert mgr.load().value == 2

    def test_bad_shape_is_corrupt(self, tmp_path):
        mgr = self._mgr(tmp_path)
        (tmp_path / "counter.json").write_text('{"other": 1}')
        with pytest.raises(CorruptError):
            mgr.load()

    def test_concurrent_updates_are_not_lost(self, tmp_path):
        mgr = self._mgr(tmp_path)
        mgr.save(Counter(0))

        def bump():
            for _ in range(25):
                LockedStateManager(
                    tmp_path / "counter.json", _counter_to_dict, _dict_to_counter,
                ).update(lambda c: setattr(c, "value", c.value + 1))

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert mgr.load().value == 100
        assert not [p for p in os.listdir(tmp_path) if p.endswith(".tmp")]
