# Copyright 2026. Atomic JSON records and fcntl-guarded state files.

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Generic, Iterator, TypeVar

from drydock.core.errors import CorruptError, NotFoundError, StorageError

T = TypeVar("T")

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime(ISO_FORMAT)


def iso_from_epoch(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, timezone.utc).strftime(ISO_FORMAT)


def parse_iso(value: str) -> float | None:
    """Epoch seconds for an ISO timestamp, or None if it cannot be parsed."""
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.strptime(value, ISO_FORMAT)
    except ValueError:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def atomic_write_json(path: Path, data: dict) -> None:
    """Write `data` to `path` via temp file + rename.

    Readers see either the previous record or the new one, never a prefix.
    Raises StorageError if the directory is not writable.
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    except OSError as e:
        raise StorageError(f"cannot write {path}: {e}") from e
    closed = False
    try:
        os.write(fd, json.dumps(data, indent=2).encode("utf-8"))
        os.write(fd, b"\n")
        os.close(fd)
        closed = True
        os.rename(tmp_path, str(path))
    except BaseException as e:
        if not closed:
            try:
                os.close(fd)
            except OSError:
                pass
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        if isinstance(e, OSError):
            raise StorageError(f"cannot write {path}: {e}") from e
        raise


def read_json(path: Path, kind: str, key: str) -> dict:
    """Load a JSON object record.

    Raises NotFoundError if absent and CorruptError if unparsable or not an
    object.
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise NotFoundError(kind, key) from None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CorruptError(kind, key, str(path), str(e)) from None
    if not isinstance(data, dict):
        raise CorruptError(kind, key, str(path), "expected a JSON object")
    return data


@contextmanager
def file_lock(lock_path: Path, shared: bool = False) -> Iterator[None]:
    """Hold an flock on `lock_path` for the duration of the block."""
    lock_path = Path(lock_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_fd = os.open(str(lock_path), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(lock_fd, fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(lock_fd, fcntl.LOCK_UN)
        os.close(lock_fd)


class LockedStateManager(Generic[T]):
    """A single JSON state file shared between processes.

    Reads take a shared flock, `update` takes an exclusive one around the
    whole read-modify-write, and every write is atomic.
    """

    def __init__(
        self,
        state_file: Path,
        serialize: Callable[[T], dict],
        deserialize: Callable[[dict], T],
        kind: str = "state",
    ):
        self.state_file = Path(state_file)
        self._lock_file = self.state_file.with_suffix(".json.lock")
        self._serialize = serialize
        self._deserialize = deserialize
        self._kind = kind

    def exists(self) -> bool:
        return self.state_file.is_file()

    def load(self) -> T:
        with file_lock(self._lock_file, shared=True):
            return self._read()

    def save(self, state: T) -> None:
        with file_lock(self._lock_file):
            atomic_write_json(self.state_file, self._serialize(state))

    def update(self, mutator: Callable[[T], None]) -> T:
        with file_lock(self._lock_file):
            state = self._read()
            mutator(state)
            atomic_write_json(self.state_file, self._serialize(state))
            return state

    def _read(self) -> T:
        data = read_json(self.state_file, self._kind, str(self.state_file))
        try:
            return self._deserialize(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptError(self._kind, str(self.state_file), str(self.state_file), str(e)) from None
