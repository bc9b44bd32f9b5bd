from __future__ import annotations

import enum
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any

import structlog

from idemkey.clock import Clock, SystemClock

logger = structlog.get_logger(__name__)


class RequestStatus(str, enum.Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class InvalidTransition(RuntimeError):
    """A complete/fail call hit a record that is absent or not PROCESSING."""

    def __init__(self, key: str, status: RequestStatus | None, target: RequestStatus) -> None:
        current = status.value if status is not None else "ABSENT"
        super().__init__(f"cannot move key {key!r} from {current} to {target.value}")
        self.key = key
        self.status = status
        self.target = target


@dataclass(frozen=True)
class RequestRecord:
    key: str
    status: RequestStatus
    created_at: float
    version: int = 1
    result: Any = None
    failure_reason: str | None = None
    completed_at: float | None = None


@dataclass(frozen=True)
class Reservation:
    created: bool
    record: RequestRecord


@dataclass
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class KeyStore:
    """In-memory idempotency key table with race-free reservation.

    Every mutation of a key runs under that key's own lock. The table-wide
    lock is held only to look up, create or drop a per-key lock, so work on
    different keys never contends. A per-key lock lives only while some
    caller holds or waits for it.
    """

    def __init__(self, clock: Clock | None = None, ttl_seconds: float | None = None) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive when set")
        self._clock = clock or SystemClock()
        self._ttl_seconds = ttl_seconds
        self._records: dict[str, RequestRecord] = {}
        self._key_locks: dict[str, _KeyLock] = {}
        self._table_lock = threading.Lock()

    def __len__(self) -> int:
        now = self._clock.now()
        return sum(1 for record in list(self._records.values()) if not self._is_expired(record, now))

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    @property
    def ttl_seconds(self) -> float | None:
        return self._ttl_seconds

    @property
    def active_key_locks(self) -> int:
        return len(self._key_locks)

    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        with self._table_lock:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = _KeyLock()
                self._key_locks[key] = entry
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._table_lock:
                entry.users -= 1
                if entry.users == 0:
                    self._key_locks.pop(key, None)

    def _is_expired(self, record: RequestRecord, now: float) -> bool:
        if self._ttl_seconds is None or record.status is not RequestStatus.COMPLETED:
            return False
        return record.created_at + self._ttl_seconds <= now

    def reserve(self, key: str) -> Reservation:
        if not key:
            raise ValueError("idempotency key must be a non-empty string")
        with self._locked(key):
            now = self._clock.now()
            existing = self._records.get(key)
            if existing is not None and self._is_expired(existing, now):
                logger.info("idempotency_key_expired", key=key, created_at=existing.created_at)
                existing = None
            if existing is not None:
                return Reservation(created=False, record=existing)

            record = RequestRecord(key=key, status=RequestStatus.PROCESSING, created_at=now)
            self._records[key] = record
            return Reservation(created=True, record=record)

    def complete(self, key: str, result: Any) -> RequestRecord:
        with self._locked(key):
            current = self._require_processing(key, RequestStatus.COMPLETED)
            record = replace(
                current,
                status=RequestStatus.COMPLETED,
                result=result,
                version=current.version + 1,
                completed_at=self._clock.now(),
            )
            self._records[key] = record
            return record

    def fail(self, key: str, reason: str) -> RequestRecord:
        """Mark the attempt FAILED and free the key for a fresh reservation.

        The FAILED record is returned to the caller but not kept: failures
        must not block retries the way a completed result does.
        """
        with self._locked(key):
            current = self._require_processing(key, RequestStatus.FAILED)
            record = replace(
                current,
                status=RequestStatus.FAILED,
                failure_reason=reason,
                version=current.version + 1,
            )
            del self._records[key]
            return record

    def get(self, key: str) -> RequestRecord | None:
        record = self._records.get(key)
        if record is not None and self._is_expired(record, self._clock.now()):
            return None
        return record

    def purge_expired(self) -> int:
        if self._ttl_seconds is None:
            return 0
        now = self._clock.now()
        purged = 0
        for key in list(self._records):
            with self._locked(key):
                record = self._records.get(key)
                if record is not None and self._is_expired(record, now):
                    del self._records[key]
                    purged += 1
        if purged:
            logger.info("idempotency_keys_purged", count=purged, remaining=len(self._records))
        return purged

    def clear(self) -> None:
        with self._table_lock:
            self._records.clear()

    def _require_processing(self, key: str, target: RequestStatus) -> RequestRecord:
        current = self._records.get(key)
        if current is None or current.status is not RequestStatus.PROCESSING:
            raise InvalidTransition(
                key=key,
                status=current.status if current is not None else None,
                target=target,
            )
        return current
