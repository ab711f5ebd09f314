# Copyright 2026. Durable append-only event log with offsets, compaction and dead-lettering.

import enum
import hashlib
import json
import os
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator

from drydock.core.errors import CorruptError, NotFoundError, StorageError
from drydock.core.logging import log_activity
from drydock.core.state import atomic_write_json, file_lock, iso_from_epoch, now_iso, parse_iso, read_json

SCHEMA_VERSION = 1
LOG_NAME = "events.log"
IDEMPOTENT_DIR = "idempotent"
_TAIL_CHUNK = 8192


class EventType(str, enum.Enum):
    PIPELINE_STARTED = "pipeline_started"
    PIPELINE_PAUSED = "pipeline_paused"
    PIPELINE_RESUMED = "pipeline_resumed"
    PIPELINE_STOPPED = "pipeline_stopped"
    PIPELINE_COMPLETED = "pipeline_completed"
    PIPELINE_FAILED = "pipeline_failed"
    STAGE_STARTED = "stage_started"
    STAGE_ITERATION = "stage_iteration"
    STAGE_PASSED = "stage_passed"
    STAGE_FAILED = "stage_failed"
    STAGE_SKIPPED = "stage_skipped"
    STAGE_RETRIED = "stage_retried"
    STAGE_AWAITING_APPROVAL = "stage_awaiting_approval"
    STAGE_APPROVED = "stage_approved"
    AGENT_STALLED = "agent_stalled"
    MERGE_CONFLICT = "merge_conflict"


@dataclass
class Event:
    seq: int
    type: str
    ts: str
    event_id: str = ""
    attrs: dict = field(default_factory=dict)
    v: int = SCHEMA_VERSION

    @property
    def epoch(self) -> float | None:
        return parse_iso(self.ts)


def _event_to_dict(event: Event) -> dict:
    d = {"v": event.v, "seq": event.seq, "ts": event.ts, "type": event.type}
    if event.event_id:
        d["event_id"] = event.event_id
    if event.attrs:
        d["attrs"] = event.attrs
    return d


def _dict_to_event(d: dict) -> Event:
    seq = d["seq"]
    if not isinstance(seq, int) or isinstance(seq, bool):
        raise ValueError(f"bad sequence: {seq!r}")
    attrs = d.get("attrs", {})
    if not isinstance(attrs, dict):
        raise ValueError("attrs must be an object")
    return Event(
        seq=seq,
        type=str(d["type"]),
        ts=d.get("ts", ""),
        event_id=d.get("event_id", ""),
        attrs=attrs,
        v=d.get("v", SCHEMA_VERSION),
    )


def _event_to_line(event: Event) -> bytes:
    return (json.dumps(_event_to_dict(event), separators=(",", ":")) + "\n").encode("utf-8")


def _new_event_id(epoch: float) -> str:
    return f"evt-{int(epoch)}-{secrets.token_hex(4)}"


class EventLog:
    """File-backed event log: `events.log` plus offsets/ and dlq/ beside it.

    Publishing and compaction serialize on an exclusive flock so sequence
    numbers stay monotonic across processes and across compaction.
    Consumers read without the lock; each record is one atomic append.
    """

    def __init__(self, events_dir: Path, activity_log: str = "",
                 retention_hours: float = 168.0, dlq_retention_hours: float = 0.0,
                 clock: Callable[[], float] = time.time):
        self.events_dir = Path(events_dir)
        self.log_path = self.events_dir / LOG_NAME
        self.meta_path = self.events_dir / "meta.json"
        self.offsets_dir = self.events_dir / "offsets"
        self.dlq_dir = self.events_dir / "dlq"
        self._lock_path = self.events_dir / ".log.lock"
        self._activity_log = activity_log
        self.retention_hours = retention_hours
        self.dlq_retention_hours = dlq_retention_hours
        self._clock = clock

    @classmethod
    def from_config(cls, config, clock: Callable[[], float] = time.time) -> "EventLog":
        return cls(
            config.events_dir, activity_log=config.activity_log,
            retention_hours=config.event_retention_hours,
            dlq_retention_hours=config.dlq_retention_hours, clock=clock,
        )

    # -- Publishing ------------------------------------------------------------

    def publish(self, event_type: str, attrs: dict | None = None) -> Event:
        """Append one event. Raises StorageError rather than drop it."""
        if isinstance(event_type, EventType):
            event_type = event_type.value
        if not event_type:
            raise ValueError("event type is required")
        attrs = dict(attrs or {})
        json.dumps(attrs)  # TypeError here, before the log is touched
        epoch = self._clock()
        try:
            with file_lock(self._lock_path):
                seq = self._last_sequence() + 1
                event = Event(
                    seq=seq, type=event_type, ts=iso_from_epoch(epoch),
                    event_id=_new_event_id(epoch), attrs=attrs,
                )
                fd = os.open(str(self.log_path), os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
                try:
                    os.write(fd, _event_to_line(event))
                finally:
                    os.close(fd)
                atomic_write_json(self.meta_path, {"last_sequence": seq, "updated_at": event.ts})
        except StorageError:
            raise
        except OSError as e:
            raise StorageError(f"cannot publish {event_type} to {self.log_path}: {e}") from e
        return event

    def _last_sequence(self) -> int:
        try:
            meta = read_json(self.meta_path, "event log meta", str(self.meta_path))
            last = int(meta.get("last_sequence", 0))
        except NotFoundError:
            last = 0
        except (TypeError, ValueError):
            last = 0
        # meta can lag the log after a crash between append and meta write
        tail = self._tail_sequence()
        return max(last, tail)

    def _tail_sequence(self) -> int:
        """Sequence of the last well-formed record, read backwards from EOF."""
        try:
            f = open(self.log_path, "rb")
        except FileNotFoundError:
            return 0
        with f:
            pos = f.seek(0, os.SEEK_END)
            head = b""
            while pos > 0:
                step = min(_TAIL_CHUNK, pos)
                pos -= step
                f.seek(pos)
                lines = (f.read(step) + head).split(b"\n")
                # the first piece may be cut mid-record until we reach offset 0
                head = lines.pop(0) if pos > 0 else b""
                for raw in reversed(lines):
                    if not raw.strip():
                        continue
                    try:
                        return int(json.loads(raw)["seq"])
                    except (ValueError, KeyError, TypeError):
                        continue
        return 0

    # -- Consuming -------------------------------------------------------------

    def _raw_lines(self) -> Iterator[str]:
        try:
            f = open(self.log_path, "r", encoding="utf-8")
        except FileNotFoundError:
            return
        with f:
            for line in f:
                line = line.rstrip("\n")
                if line.strip():
                    yield line

    def consume(self, from_offset: int = 0) -> Iterator[Event]:
        """Lazily yield events with seq > from_offset, in append order.

        Each call re-reads the file, so the sequence can be restarted from
        any offset. Malformed records are dead-lettered and skipped.
        """
        for event in self._events(quarantine=True):
            if event.seq > from_offset:
                yield event

    def _events(self, quarantine: bool) -> Iterator[Event]:
        for line in self._raw_lines():
            try:
                event = _dict_to_event(json.loads(line))
            except (ValueError, KeyError, TypeError) as e:
                if quarantine:
                    self.dead_letter(line, f"malformed: {e}")
                continue
            yield event

    def replay(self, from_seq: int = 1) -> Iterator[Event]:
        return self.consume(max(from_seq - 1, 0))

    def process(self, consumer_id: str, handler: Callable[[Event], object]) -> int:
        """Feed every unconsumed event to `handler`, committing as it goes.

        Each outcome is recorded under the event's id before the offset
        moves, so an event redelivered after a crash between the two is
        skipped instead of handled twice. An event whose handler raises is
        dead-lettered and the stream moves on to the next one.
        """
        processed = 0
        for event in self.consume(self.offset(consumer_id)):
            marker = self._idempotency_path(consumer_id, event)
            if marker.is_file():
                log_activity(self._activity_log, "events",
                             f"{consumer_id}: {marker.stem} already handled, skipping")
            else:
                try:
                    handler(event)
                    outcome = "processed"
                except Exception as e:
                    self.dead_letter(event, f"{type(e).__name__}: {e}", consumer=consumer_id)
                    outcome = "dead_lettered"
                atomic_write_json(marker, {
                    "operation_id": marker.stem, "seq": event.seq,
                    "outcome": outcome, "completed_at": now_iso(),
                })
            self.commit_offset(consumer_id, event.seq)
            processed += 1
        return processed

    def _idempotency_path(self, consumer_id: str, event: Event) -> Path:
        self._offset_path(consumer_id)
        key = event.event_id or f"seq-{event.seq}"
        return self.offsets_dir / IDEMPOTENT_DIR / consumer_id / f"{key}.json"

    def _forget_handled(self, events: list[Event]) -> None:
        """Drop idempotency records of events no longer in the log."""
        root = self.offsets_dir / IDEMPOTENT_DIR
        if not events or not root.is_dir():
            return
        keys = [e.event_id or f"seq-{e.seq}" for e in events]
        for consumer_dir in root.iterdir():
            for key in keys:
                (consumer_dir / f"{key}.json").unlink(missing_ok=True)

    # -- Offsets ---------------------------------------------------------------

    def _offset_path(self, consumer_id: str) -> Path:
        if not consumer_id or "/" in consumer_id or consumer_id.startswith("."):
            raise ValueError(f"invalid consumer id: {consumer_id!r}")
        return self.offsets_dir / f"{consumer_id}.json"

    def offset(self, consumer_id: str) -> int:
        path = self._offset_path(consumer_id)
        try:
            return int(read_json(path, "offset", consumer_id).get("offset", 0))
        except CorruptError as e:
            log_activity(self._activity_log, "events", f"WARN: {e}; treating as offset 0")
            return 0
        except NotFoundError:
            return 0

    def commit_offset(self, consumer_id: str, offset: int) -> int:
        """Persist a consumer's progress. Offsets never move backwards."""
        if offset < 0:
            raise ValueError("offset must be >= 0")
        path = self._offset_path(consumer_id)
        with file_lock(path.with_suffix(".json.lock")):
            current = self.offset(consumer_id)
            if offset < current:
                log_activity(
                    self._activity_log, "events",
                    f"ignored rewind of '{consumer_id}' from {current} to {offset}",
                )
                return current
            atomic_write_json(path, {
                "consumer": consumer_id, "offset": offset, "updated_at": now_iso(),
            })
        return offset

    def consumers(self) -> dict[str, int]:
        if not self.offsets_dir.is_dir():
            return {}
        return {
            p.stem: self.offset(p.stem)
            for p in sorted(self.offsets_dir.glob("*.json"))
        }

    # -- Dead letters ----------------------------------------------------------

    def dead_letter(self, event: Event | str, reason: str, consumer: str = "") -> Path:
        """Copy an unprocessable event out of the main path."""
        epoch = self._clock()
        if isinstance(event, Event):
            payload: dict | str = _event_to_dict(event)
            key = f"{event.seq:012d}"
            path = self.dlq_dir / f"{key}-{int(epoch)}-{secrets.token_hex(3)}.json"
        else:
            # a raw line keeps one record however many readers trip on it
            payload = event
            key = "raw-" + hashlib.sha1(event.encode("utf-8")).hexdigest()[:12]
            path = self.dlq_dir / f"{key}.json"
            if path.is_file():
                return path
        atomic_write_json(path, {
            "event": payload,
            "reason": reason,
            "consumer": consumer,
            "retry_count": 0,
            "dead_lettered_at": iso_from_epoch(epoch),
        })
        log_activity(self._activity_log, "events", f"dead-lettered {key}: {reason}")
        return path

    def dead_letters(self) -> list[dict]:
        if not self.dlq_dir.is_dir():
            return []
        records = []
        for p in sorted(self.dlq_dir.glob("*.json")):
            try:
                rec = read_json(p, "dead letter", p.name)
            except NotFoundError:
                continue
            rec["name"] = p.name
            records.append(rec)
        return records

    def retry_dead_letter(self, name: str) -> Event:
        """Republish a dead-lettered event under a new sequence number."""
        path = self.dlq_dir / name
        rec = read_json(path, "dead letter", name)
        payload = rec.get("event")
        if not isinstance(payload, dict) or not payload.get("type"):
            raise CorruptError("dead letter", name, str(path), "no replayable event")
        attrs = dict(payload.get("attrs", {}))
        attrs["replayed_from"] = payload.get("event_id") or payload.get("seq")
        event = self.publish(payload["type"], attrs)
        path.unlink(missing_ok=True)
        return event

    def purge_dead_letters(self, older_than_hours: float | None = None) -> int:
        hours = self.dlq_retention_hours if older_than_hours is None else older_than_hours
        if hours <= 0 or not self.dlq_dir.is_dir():
            return 0
        cutoff = self._clock() - hours * 3600
        purged = 0
        for p in self.dlq_dir.glob("*.json"):
            try:
                at = parse_iso(read_json(p, "dead letter", p.name).get("dead_lettered_at", ""))
            except NotFoundError:
                at = None
            if at is None:
                at = p.stat().st_mtime
            if at < cutoff:
                p.unlink(missing_ok=True)
                purged += 1
        return purged

    # -- Compaction & status ---------------------------------------------------

    def compact(self, retention_hours: float | None = None) -> int:
        """Drop events past retention that every tracked consumer has passed.

        An event survives while any committed offset is below its sequence.
        Returns the number of events removed.
        """
        hours = self.retention_hours if retention_hours is None else retention_hours
        cutoff = self._clock() - hours * 3600
        offsets = self.consumers()
        floor = min(offsets.values()) if offsets else None

        with file_lock(self._lock_path):
            if not self.log_path.is_file():
                return 0
            last_seq = self._last_sequence()
            kept: list[str] = []
            dropped = 0
            gone: list[Event] = []
            for line in self._raw_lines():
                try:
                    event = _dict_to_event(json.loads(line))
                except (ValueError, KeyError, TypeError) as e:
                    self.dead_letter(line, f"malformed: {e}")
                    dropped += 1
                    continue
                epoch = event.epoch
                expired = epoch is not None and epoch < cutoff
                consumed = floor is None or event.seq <= floor
                if expired and consumed:
                    dropped += 1
                    gone.append(event)
                else:
                    kept.append(line)
            if dropped:
                self._rewrite(kept)
                atomic_write_json(self.meta_path, {"last_sequence": last_seq, "updated_at": now_iso()})
                log_activity(self._activity_log, "events", f"compacted {dropped} event(s), {len(kept)} kept")
        self._forget_handled(gone)
        return dropped

    def _rewrite(self, lines: list[str]) -> None:
        tmp = self.log_path.with_name(f".{LOG_NAME}.{os.getpid()}.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                for line in lines:
                    f.write(line + "\n")
            os.rename(tmp, self.log_path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"cannot compact {self.log_path}: {e}") from e

    def status(self) -> dict:
        count = 0
        oldest = newest = ""
        for event in self._events(quarantine=False):
            count += 1
            if not oldest:
                oldest = event.ts
            newest = event.ts
        last_seq = self._last_sequence()
        size = self.log_path.stat().st_size if self.log_path.is_file() else 0
        return {
            "log": str(self.log_path),
            "events": count,
            "size_bytes": size,
            "oldest": oldest,
            "newest": newest,
            "last_sequence": last_seq,
            "consumers": {
                cid: {"offset": off, "lag": max(last_seq - off, 0)}
                for cid, off in self.consumers().items()
            },
            "dead_letters": len(list(self.dlq_dir.glob("*.json"))) if self.dlq_dir.is_dir() else 0,
        }
