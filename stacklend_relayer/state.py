"""
Durable relay state: processed-event records, retry queue and height watermark.

The whole state is one JSON document::

    {
      "watermark": 123,
      "processed": {"borrow:0xab..:1": {"hash": "0x..", "t": 1700000000000, "status": "submitted"}},
      "failures": {"borrow:0xcd..:0": {"attempts": 2, "error": "...", "t": ..., "deadLettered": false, "event": {...}}}
    }

Timestamps (``t``) are epoch milliseconds. Every mutation rewrites the
document atomically (temp file + ``os.replace``) unless writes are
:meth:`StateStore.deferred`, in which case the owner persists explicitly.
"""

import json
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional, Union

import structlog

logger = structlog.get_logger()

STATUS_SUBMITTED = "submitted"
STATUS_CONFIRMED = "confirmed"
STATUS_REVERTED = "reverted"
STATUS_LOGGED = "logged"

LOGGED_HASH = "logged"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ProcessedRecord:
    """Record of a handled source event."""

    key: str
    tx_hash: str
    processed_at: int
    status: str = STATUS_SUBMITTED

    def to_document(self) -> dict[str, Any]:
        return {"hash": self.tx_hash, "t": self.processed_at, "status": self.status}

    @classmethod
    def from_document(cls, key: str, data: dict[str, Any]) -> "ProcessedRecord":
        tx_hash = data.get("hash", "")
        default_status = STATUS_LOGGED if tx_hash == LOGGED_HASH else STATUS_SUBMITTED
        return cls(
            key=key,
            tx_hash=tx_hash,
            processed_at=int(data.get("t", 0)),
            status=data.get("status", default_status),
        )


@dataclass
class FailureRecord:
    """Failed execution of a borrow event, kept for retry or as a dead letter."""

    key: str
    attempts: int
    last_error: str
    updated_at: int
    dead_lettered: bool
    event: dict[str, Any]

    def to_document(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "error": self.last_error,
            "t": self.updated_at,
            "deadLettered": self.dead_lettered,
            "event": self.event,
        }

    @classmethod
    def from_document(cls, key: str, data: dict[str, Any]) -> "FailureRecord":
        return cls(
            key=key,
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("error", ""),
            updated_at=int(data.get("t", 0)),
            dead_lettered=bool(data.get("deadLettered", False)),
            event=data.get("event") or {},
        )


@dataclass
class RelayState:
    """In-memory relay state."""

    watermark: int = 0
    processed: dict[str, ProcessedRecord] = field(default_factory=dict)
    failures: dict[str, FailureRecord] = field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        return {
            "watermark": self.watermark,
            "processed": {k: r.to_document() for k, r in self.processed.items()},
            "failures": {k: r.to_document() for k, r in self.failures.items()},
        }

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "RelayState":
        # Older documents stored the watermark as "lastHeight".
        watermark = data.get("watermark", data.get("lastHeight", 0))
        return cls(
            watermark=int(watermark or 0),
            processed={
                k: ProcessedRecord.from_document(k, v)
                for k, v in (data.get("processed") or {}).items()
            },
            failures={
                k: FailureRecord.from_document(k, v)
                for k, v in (data.get("failures") or {}).items()
            },
        )


class StateStore:
    """
    File-backed relay state.

    Only one relayer instance may use a given state file at a time.
    """

    def __init__(self, path: Union[str, Path], autosave: bool = True):
        self.path = Path(path)
        self.autosave = autosave
        self.state = self.load()

    @property
    def watermark(self) -> int:
        return self.state.watermark

    def load(self) -> RelayState:
        """Read the state document; defaults when missing or unreadable."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                state = RelayState.from_document(json.load(f))
        except FileNotFoundError:
            logger.info("state_file_missing", path=str(self.path))
            return RelayState()
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning("state_file_unreadable", path=str(self.path), error=str(e))
            return RelayState()

        logger.info(
            "state_loaded",
            path=str(self.path),
            watermark=state.watermark,
            processed=len(state.processed),
            failures=len(state.failures),
        )
        return state

    def snapshot(self) -> str:
        """Serialize the current state; safe to write from another thread."""
        return json.dumps(self.state.to_document(), indent=2)

    def write(self, document: str) -> None:
        """Atomically replace the state file with a serialized document."""
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=directory, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(document)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

    def persist(self) -> None:
        """Write the whole document atomically."""
        self.write(self.snapshot())

    @contextmanager
    def deferred(self) -> Iterator[None]:
        """Suspend per-mutation writes; the caller persists when done."""
        previous = self.autosave
        self.autosave = False
        try:
            yield
        finally:
            self.autosave = previous

    def _changed(self) -> None:
        if self.autosave:
            self.persist()

    def is_processed(self, key: str) -> bool:
        return key in self.state.processed

    def get(self, key: str) -> Optional[ProcessedRecord]:
        return self.state.processed.get(key)

    def mark_processed(
        self,
        key: str,
        tx_hash: str,
        height: Optional[int] = None,
        status: str = STATUS_SUBMITTED,
    ) -> ProcessedRecord:
        """
        Record a handled event.

        A key is recorded at most once; marking an existing key returns the
        existing record unchanged. When ``height`` is given the watermark
        advances to ``max(watermark, height)``.
        """
        existing = self.state.processed.get(key)
        if existing is not None:
            return existing

        record = ProcessedRecord(key=key, tx_hash=tx_hash, processed_at=now_ms(), status=status)
        self.state.processed[key] = record
        self.state.failures.pop(key, None)
        if height is not None:
            self.state.watermark = max(self.state.watermark, height)
        self._changed()
        return record

    def advance_watermark(self, height: int) -> None:
        if height > self.state.watermark:
            self.state.watermark = height
            self._changed()

    def update_status(self, key: str, status: str) -> None:
        record = self.state.processed.get(key)
        if record is None:
            raise KeyError(key)
        if record.status != status:
            record.status = status
            self._changed()

    def record_failure(
        self,
        key: str,
        event: dict[str, Any],
        error: str,
        permanent: bool = False,
        count_attempt: bool = True,
        max_attempts: Optional[int] = None,
    ) -> FailureRecord:
        """
        Record a failed execution.

        The event is dead-lettered when ``permanent`` or once its attempts
        reach ``max_attempts``.
        """
        record = self.state.failures.get(key)
        if record is None:
            record = FailureRecord(
                key=key,
                attempts=0,
                last_error=error,
                updated_at=now_ms(),
                dead_lettered=False,
                event=event,
            )
            self.state.failures[key] = record

        if count_attempt:
            record.attempts += 1
        record.last_error = error
        record.updated_at = now_ms()
        record.event = event
        if permanent or (max_attempts is not None and record.attempts >= max_attempts):
            record.dead_lettered = True

        self._changed()
        return record

    def get_failure(self, key: str) -> Optional[FailureRecord]:
        return self.state.failures.get(key)

    def is_dead_lettered(self, key: str) -> bool:
        record = self.state.failures.get(key)
        return record is not None and record.dead_lettered

    def retry_queue(self) -> list[FailureRecord]:
        """Failures still eligible for retry."""
        return [
            r
            for r in self.state.failures.values()
            if not r.dead_lettered and r.key not in self.state.processed
        ]

    def dead_letters(self) -> list[FailureRecord]:
        return [r for r in self.state.failures.values() if r.dead_lettered]

    def requeue(self, key: str) -> FailureRecord:
        """Return a dead-lettered event to the retry queue with a fresh attempt count."""
        record = self.state.failures.get(key)
        if record is None:
            raise KeyError(key)
        record.dead_lettered = False
        record.attempts = 0
        record.updated_at = now_ms()
        self._changed()
        return record

    def recent(self, limit: int = 50) -> list[ProcessedRecord]:
        """Most recently processed records, newest first."""
        records = sorted(
            self.state.processed.values(), key=lambda r: r.processed_at, reverse=True
        )
        return records[:limit]

    def count_since(self, since_ms: int) -> int:
        return sum(1 for r in self.state.processed.values() if r.processed_at >= since_ms)

    def pending_submissions(self, limit: Optional[int] = None) -> list[ProcessedRecord]:
        """Submitted destination transactions without a known outcome, oldest first."""
        records = sorted(
            (r for r in self.state.processed.values() if r.status == STATUS_SUBMITTED),
            key=lambda r: r.processed_at,
        )
        return records[:limit] if limit is not None else records
