from __future__ import annotations

import asyncio
import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from idemkey.activity import LogAppender
from idemkey.clock import Clock, SystemClock
from idemkey.key_store import InvalidTransition, KeyStore, RequestStatus
from idemkey.telemetry import Telemetry

logger = structlog.get_logger(__name__)

Operation = Callable[[], Awaitable[Any]]


class _AttemptCancelled(Exception):
    """Ends the shared in-flight future when the executing caller is cancelled."""


class HandleStatus(str, enum.Enum):
    COMPLETED = "completed"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class HandleOutcome:
    key: str
    status: HandleStatus
    result: Any = None
    replayed: bool = False

    @property
    def is_conflict(self) -> bool:
        return self.status is HandleStatus.CONFLICT


class RequestCoordinator:
    """Check, lock, process and finalize one operation per idempotency key.

    A key's operation runs at most once. Repeats after completion replay the
    stored result; repeats while the first attempt is still running get a
    conflict outcome, or share the in-flight result when waiting is enabled.
    A failed attempt frees the key and re-raises the operation's error.
    """

    def __init__(
        self,
        store: KeyStore,
        clock: Clock | None = None,
        log: LogAppender | None = None,
        telemetry: Telemetry | None = None,
        wait_for_in_flight: bool = False,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._log = log
        self._telemetry = telemetry or Telemetry()
        self._wait_for_in_flight = wait_for_in_flight
        self._in_flight: dict[str, asyncio.Future[Any]] = {}

    @property
    def store(self) -> KeyStore:
        return self._store

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def _emit(self, message: str) -> None:
        if self._log is not None:
            self._log(self._clock.now(), message)

    async def handle(
        self,
        key: str,
        operation: Operation,
        *,
        wait: bool | None = None,
    ) -> HandleOutcome:
        self._emit(f"Checking key: {key}...")
        reservation = self._store.reserve(key)
        record = reservation.record

        if not reservation.created:
            if record.status is RequestStatus.COMPLETED:
                self._telemetry.record_decision("replayed")
                logger.info("idempotency_replay", key=key, version=record.version)
                self._emit("Key found. Returning cached response.")
                return HandleOutcome(
                    key=key,
                    status=HandleStatus.COMPLETED,
                    result=record.result,
                    replayed=True,
                )

            should_wait = self._wait_for_in_flight if wait is None else wait
            in_flight = self._in_flight.get(key)
            if should_wait and in_flight is not None:
                self._telemetry.record_decision("waited")
                logger.info("idempotency_wait_in_flight", key=key)
                self._emit("Key in flight. Waiting for the original request...")
                try:
                    result = await asyncio.shield(in_flight)
                except _AttemptCancelled:
                    # The key is free again; take it over as a fresh attempt.
                    self._emit("Original request was cancelled. Retrying as a new attempt.")
                    return await self.handle(key, operation, wait=wait)
                self._emit("Original request finished. Returning its response.")
                return HandleOutcome(
                    key=key,
                    status=HandleStatus.COMPLETED,
                    result=result,
                    replayed=True,
                )

            self._telemetry.record_decision("conflict")
            logger.info("idempotency_conflict", key=key, created_at=record.created_at)
            self._emit("Key in flight. Request is still processing.")
            return HandleOutcome(key=key, status=HandleStatus.CONFLICT)

        self._telemetry.record_decision("new")
        self._telemetry.set_keys_tracked(len(self._store))
        logger.info("idempotency_key_reserved", key=key)
        self._emit("Key new. Locking & processing...")
        return await self._execute(key, operation)

    async def _execute(self, key: str, operation: Operation) -> HandleOutcome:
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await operation()
        except asyncio.CancelledError:
            self._store.fail(key, reason="cancelled")
            future.set_exception(_AttemptCancelled())
            future.exception()
            logger.warning("idempotency_operation_cancelled", key=key)
            raise
        except Exception as exc:
            failed = self._store.fail(key, reason=str(exc) or type(exc).__name__)
            future.set_exception(exc)
            # Waiters re-raise it themselves; mark it retrieved for the loop.
            future.exception()
            self._telemetry.set_keys_tracked(len(self._store))
            logger.info(
                "idempotency_attempt_failed",
                key=key,
                reason=failed.failure_reason,
                error=type(exc).__name__,
            )
            self._emit(f"Attempt failed ({failed.failure_reason}). Key released for retry.")
            raise
        finally:
            self._in_flight.pop(key, None)

        # No suspension point between the operation returning and the key
        # completing, so its side effect and COMPLETED are seen together.
        try:
            record = self._store.complete(key, result)
        except InvalidTransition as exc:
            future.set_exception(exc)
            future.exception()
            raise
        future.set_result(result)
        logger.info("idempotency_key_completed", key=key, version=record.version)
        self._emit("Operation completed. Key saved.")
        return HandleOutcome(key=key, status=HandleStatus.COMPLETED, result=result)
