from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

IDEMPOTENCY_DECISIONS_TOTAL = Counter(
    "idempotency_decisions_total",
    "Coordinator decisions per incoming keyed request.",
    ["decision"],
)
CHARGE_EXECUTIONS_TOTAL = Counter(
    "charge_executions_total",
    "Executions of the side-effecting charge operation.",
    ["mode", "result"],
)
DUPLICATE_UNPROTECTED_CHARGES_TOTAL = Counter(
    "duplicate_unprotected_charges_total",
    "Unprotected charges submitted while another was still in flight.",
)

IDEMPOTENCY_KEYS_TRACKED = Gauge(
    "idempotency_keys_tracked",
    "Records currently held in the key store.",
)
LEDGER_BALANCE = Gauge("ledger_balance", "Current wallet balance.")

CHARGE_DURATION_SECONDS = Histogram(
    "charge_duration_seconds",
    "Time spent inside one charge execution.",
    ["mode"],
)


class Telemetry:
    def record_decision(self, decision: str) -> None:
        IDEMPOTENCY_DECISIONS_TOTAL.labels(decision=decision).inc()

    def record_execution(self, mode: str, result: str) -> None:
        CHARGE_EXECUTIONS_TOTAL.labels(mode=mode, result=result).inc()

    def record_duplicate_unprotected(self) -> None:
        DUPLICATE_UNPROTECTED_CHARGES_TOTAL.inc()

    def observe_charge_duration(self, mode: str, value: float) -> None:
        CHARGE_DURATION_SECONDS.labels(mode=mode).observe(max(0.0, value))

    def set_keys_tracked(self, count: int) -> None:
        IDEMPOTENCY_KEYS_TRACKED.set(max(0, count))

    def set_balance(self, balance: int) -> None:
        LEDGER_BALANCE.set(balance)

    @staticmethod
    def scrape() -> tuple[bytes, str]:
        return generate_latest(), CONTENT_TYPE_LATEST
