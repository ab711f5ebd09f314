# Copyright 2026. Named TTL-bounded advisory locks on the local file system.

from __future__ import annotations

import json
import os
import re
import socket
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

from drydock.core.errors import ContendedError, CorruptError, NotFoundError, StorageError
from drydock.core.logging import log_activity
from drydock.core.state import file_lock, iso_from_epoch, read_json

_VALID_RESOURCE_RE = re.compile(r"^[A-Za-z0-9._@:-]+$")


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class LockRecord:
    resource: str
    holder: str
    acquired_epoch: float
    ttl_seconds: float
    pid: int = 0
    acquired_at: str = ""

    def expires_epoch(self) -> float:
        return self.acquired_epoch + self.ttl_seconds

    def remaining(self, now: float) -> float:
        return max(self.expires_epoch() - now, 0.0)

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_epoch()


def _record_to_dict(rec: LockRecord) -> dict:
    return {
        "resource": rec.resource,
        "holder": rec.holder,
        "pid": rec.pid,
        "acquired_at": rec.acquired_at,
        "acquired_epoch": rec.acquired_epoch,
        "ttl_seconds": rec.ttl_seconds,
    }


def _dict_to_record(d: dict) -> LockRecord:
    return LockRecord(
        resource=d["resource"],
        holder=d["holder"],
        acquired_epoch=float(d["acquired_epoch"]),
        ttl_seconds=float(d["ttl_seconds"]),
        pid=int(d.get("pid", 0)),
        acquired_at=d.get("acquired_at", ""),
    )


class LockManager:
    """Existence of a fresh `locks/<resource>.json` is the lock.

    A per-resource flock serializes acquire/release between processes, and
    the record itself is published with `os.link`, which refuses to
    overwrite, so two acquirers can never both create it.
    """

    def __init__(self, locks_dir: Path, activity_log: str = "",
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep):
        self.locks_dir = Path(locks_dir)
        self._activity_log = activity_log
        self._clock = clock
        self._sleep = sleep

    def _path(self, resource: str) -> Path:
        if not resource or not _VALID_RESOURCE_RE.match(resource) or resource.startswith("."):
            raise ValueError(f"Invalid lock resource: {resource!r}")
        return self.locks_dir / f"{resource}.json"

    def _log(self, msg: str) -> None:
        log_activity(self._activity_log, "locks", msg)

    def _read(self, path: Path, resource: str) -> LockRecord | None:
        """The stored record, None if absent, or raises ValueError if unreadable."""
        try:
            return _dict_to_record(read_json(path, "lock", resource))
        except CorruptError as e:
            raise ValueError(str(e)) from None
        except NotFoundError:
            return None
        except (KeyError, TypeError) as e:
            raise ValueError(f"lock record {resource} is malformed: {e}") from None

    def _create_exclusive(self, path: Path, rec: LockRecord) -> bool:
        """Publish `rec` at `path` only if nothing is there. False if taken."""
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.locks_dir), prefix=".lock-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(json.dumps(_record_to_dict(rec), indent=2) + "\n")
            try:
                os.link(tmp, path)
            except FileExistsError:
                return False
            return True
        except OSError as e:
            raise StorageError(f"cannot write lock {path}: {e}") from e
        finally:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass

    def acquire(self, resource: str, ttl_seconds: float | None = None,
                holder: str | None = None) -> LockRecord:
        """Take `resource` for `ttl_seconds`, reclaiming an expired record first.

        Raises ContendedError while a fresh record belongs to someone else.
        Re-acquiring as the current holder refreshes the TTL.
        """
        ttl = 300.0 if ttl_seconds is None else float(ttl_seconds)
        if ttl <= 0:
            raise ValueError("ttl_seconds must be > 0")
        holder = holder or default_holder()
        path = self._path(resource)

        with file_lock(path.with_suffix(".json.lock")):
            now = self._clock()
            try:
                existing = self._read(path, resource)
            except ValueError as e:
                self._log(f"WARN: reclaiming unreadable lock {resource}: {e}")
                path.unlink(missing_ok=True)
                existing = None

            if existing is not None:
                if not existing.is_fresh(now):
                    self._log(
                        f"reclaimed expired lock {resource} from {existing.holder} "
                        f"({int(now - existing.expires_epoch())}s past TTL)"
                    )
                    path.unlink(missing_ok=True)
                elif existing.holder == holder:
                    path.unlink(missing_ok=True)
                else:
                    raise ContendedError(resource, existing.holder, existing.remaining(now))

            rec = LockRecord(
                resource=resource, holder=holder, acquired_epoch=now,
                ttl_seconds=ttl, pid=os.getpid(), acquired_at=iso_from_epoch(now),
            )
            if not self._create_exclusive(path, rec):
                # created outside the guard
                taken = self._read(path, resource)
                raise ContendedError(resource, taken.holder if taken else "", ttl)
        self._log(f"acquired {resource} as {holder} (ttl {int(ttl)}s)")
        return rec

    def release(self, resource: str, holder: str | None = None) -> bool:
        """Remove the lock if `holder` owns it. Returns False otherwise."""
        holder = holder or default_holder()
        path = self._path(resource)
        with file_lock(path.with_suffix(".json.lock")):
            try:
                existing = self._read(path, resource)
            except ValueError:
                return False
            if existing is None or existing.holder != holder:
                return False
            path.unlink(missing_ok=True)
        self._log(f"released {resource}")
        return True

    def get(self, resource: str) -> LockRecord | None:
        try:
            return self._read(self._path(resource), resource)
        except ValueError:
            return None

    def is_held(self, resource: str) -> bool:
        rec = self.get(resource)
        return rec is not None and rec.is_fresh(self._clock())

    def list(self) -> list[tuple[LockRecord, bool]]:
        """Every stored record with its freshness."""
        if not self.locks_dir.is_dir():
            return []
        now = self._clock()
        out = []
        for p in sorted(self.locks_dir.glob("*.json")):
            if p.name.startswith("."):
                continue
            rec = self.get(p.stem)
            if rec is not None:
                out.append((rec, rec.is_fresh(now)))
        return out

    def wait_for(self, resource: str, ttl_seconds: float | None = None,
                 timeout: float = 0.0, interval: float = 1.0,
                 holder: str | None = None) -> LockRecord:
        """Poll `acquire` until it succeeds or `timeout` seconds pass."""
        deadline = self._clock() + timeout
        while True:
            try:
                return self.acquire(resource, ttl_seconds, holder)
            except ContendedError as e:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise
                self._sleep(min(interval, remaining, max(e.remaining_seconds, 0.05)))

    @contextmanager
    def held(self, resource: str, ttl_seconds: float | None = None,
             timeout: float = 0.0, holder: str | None = None) -> Iterator[LockRecord]:
        holder = holder or default_holder()
        rec = self.wait_for(resource, ttl_seconds, timeout=timeout, holder=holder)
        try:
            yield rec
        finally:
            self.release(resource, holder)
