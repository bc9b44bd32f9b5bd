from __future__ import annotations

import time
import uuid

import structlog

from idemkey.activity import ActivityLog
from idemkey.clock import Clock, SystemClock
from idemkey.config import CoordinatorConfig
from idemkey.coordinator import RequestCoordinator
from idemkey.key_store import KeyStore
from idemkey.ledger import ChargeResult, InsufficientFunds, Ledger
from idemkey.schemas import ChargeRequest, ChargeResultModel, LedgerSnapshot, SubmitResponse
from idemkey.telemetry import Telemetry

logger = structlog.get_logger(__name__)

PROTECTED = "protected"
UNPROTECTED = "unprotected"


def new_idempotency_key() -> str:
    """Client-side key, generated once before the first attempt is sent."""
    return f"key_{uuid.uuid4().hex}"


class ChargeService:
    """Charge a wallet with or without idempotency-key protection.

    One service owns one wallet, one key table and one activity feed. Build
    separate instances to compare the protected and unprotected flows.
    """

    def __init__(
        self,
        config: CoordinatorConfig | None = None,
        clock: Clock | None = None,
        activity: ActivityLog | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._config = config or CoordinatorConfig()
        self._clock = clock or SystemClock()
        self._activity = activity or ActivityLog(max_entries=self._config.activity_max_entries)
        self._telemetry = telemetry or Telemetry()
        self._ledger = Ledger(initial_balance=self._config.initial_balance)
        self._store = KeyStore(clock=self._clock, ttl_seconds=self._config.record_ttl_seconds)
        self._coordinator = RequestCoordinator(
            store=self._store,
            clock=self._clock,
            log=self._activity.append,
            telemetry=self._telemetry,
            wait_for_in_flight=self._config.wait_for_in_flight,
        )
        self._unprotected_in_flight = 0
        self._logger = logger.bind(service="charge")
        self._publish_balance()

    @property
    def config(self) -> CoordinatorConfig:
        return self._config

    @property
    def balance(self) -> int:
        return self._ledger.balance

    @property
    def activity(self) -> ActivityLog:
        return self._activity

    @property
    def key_store(self) -> KeyStore:
        return self._store

    @property
    def coordinator(self) -> RequestCoordinator:
        return self._coordinator

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            balance=self._ledger.balance,
            keys_tracked=len(self._store),
            in_flight_protected=self._coordinator.in_flight_count,
            in_flight_unprotected=self._unprotected_in_flight,
        )

    def _emit(self, message: str) -> None:
        self._activity.append(self._clock.now(), message)

    def _publish_balance(self) -> None:
        self._telemetry.set_balance(self._ledger.balance)

    async def submit_with_key(self, key: str, amount: int | None = None) -> SubmitResponse:
        request = ChargeRequest(
            key=key,
            amount=amount if amount is not None else self._config.default_charge_amount,
        )

        async def charge() -> ChargeResult:
            started = time.monotonic()
            await self._clock.sleep(self._config.processing_delay_seconds)
            try:
                # Nothing below awaits, so the coordinator completes the key
                # before any other coroutine can observe the new balance.
                result = self._ledger.charge(request.amount)
            except InsufficientFunds:
                self._telemetry.record_execution(mode=PROTECTED, result="declined")
                raise
            finally:
                self._telemetry.observe_charge_duration(PROTECTED, time.monotonic() - started)
            self._telemetry.record_execution(mode=PROTECTED, result="charged")
            self._publish_balance()
            self._emit(f"HTTP 200: Charged ${result.charged}. Balance ${result.new_balance}.")
            return result

        try:
            outcome = await self._coordinator.handle(request.key, charge)
        except InsufficientFunds as exc:
            self._logger.info(
                "charge_declined",
                key=request.key,
                amount=request.amount,
                balance=exc.balance,
            )
            self._emit(f"HTTP 402: Declined, balance ${exc.balance} below ${exc.amount}.")
            return SubmitResponse(key=request.key, status="declined", detail=str(exc))

        if outcome.is_conflict:
            return SubmitResponse(
                key=request.key,
                status="conflict",
                detail="request with this key is still processing",
            )

        result: ChargeResult = outcome.result
        if outcome.replayed:
            self._logger.info("charge_replayed", key=request.key, charged=result.charged)
        return SubmitResponse(
            key=request.key,
            status="completed",
            result=ChargeResultModel.from_result(result),
            replayed=outcome.replayed,
        )

    async def submit_without_protection(self, amount: int | None = None) -> ChargeResult:
        """Baseline charge: every call executes, duplicates included."""
        charge_amount = amount if amount is not None else self._config.default_charge_amount
        if not self._ledger.can_cover(charge_amount):
            self._telemetry.record_execution(mode=UNPROTECTED, result="declined")
            raise InsufficientFunds(balance=self._ledger.balance, amount=charge_amount)

        self._emit("Request POST /charge initiated...")
        self._unprotected_in_flight += 1
        if self._unprotected_in_flight > 1:
            self._telemetry.record_duplicate_unprotected()
            self._logger.warning(
                "duplicate_charge_in_flight",
                in_flight=self._unprotected_in_flight,
                amount=charge_amount,
            )
        started = time.monotonic()
        try:
            await self._clock.sleep(self._config.processing_delay_seconds)
            # Funds were checked at submission only, as in a naive handler.
            result = self._ledger.charge(charge_amount, allow_overdraft=True)
        finally:
            self._unprotected_in_flight -= 1
            self._telemetry.observe_charge_duration(UNPROTECTED, time.monotonic() - started)

        self._telemetry.record_execution(mode=UNPROTECTED, result="charged")
        self._publish_balance()
        self._emit(f"HTTP 200: Charged ${result.charged}")
        return result

    def top_up(self, amount: int) -> int:
        balance = self._ledger.top_up(amount)
        self._publish_balance()
        self._logger.info("wallet_topped_up", amount=amount, balance=balance)
        self._emit(f"Wallet topped up by ${amount}. Balance ${balance}.")
        return balance

    def purge_expired_keys(self) -> int:
        purged = self._store.purge_expired()
        self._telemetry.set_keys_tracked(len(self._store))
        return purged

    def reset(self) -> str:
        """Restore the initial wallet and forget every key; returns a fresh key."""
        if self._coordinator.in_flight_count or self._unprotected_in_flight:
            raise RuntimeError("cannot reset while charges are in flight")
        self._ledger.reset(self._config.initial_balance)
        self._store.clear()
        self._activity.clear()
        self._telemetry.set_keys_tracked(0)
        self._publish_balance()
        self._logger.info("charge_service_reset", balance=self._config.initial_balance)
        return new_idempotency_key()
