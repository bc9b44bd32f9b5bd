from __future__ import annotations

from dataclasses import dataclass


@dataclass
class CoordinatorConfig:
    initial_balance: int = 1000
    default_charge_amount: int = 100

    # Simulated network/processing latency of one charge.
    processing_delay_seconds: float = 1.5

    # None keeps completed keys forever.
    record_ttl_seconds: float | None = None

    # Duplicates that arrive while a key is processing either get a conflict
    # response (False) or wait for the in-flight result (True).
    wait_for_in_flight: bool = False

    activity_max_entries: int | None = 500

    def __post_init__(self) -> None:
        if self.initial_balance < 0:
            raise ValueError("initial_balance must not be negative")
        if self.default_charge_amount <= 0:
            raise ValueError("default_charge_amount must be positive")
        if self.processing_delay_seconds < 0:
            raise ValueError("processing_delay_seconds must not be negative")
        if self.record_ttl_seconds is not None and self.record_ttl_seconds <= 0:
            raise ValueError("record_ttl_seconds must be positive when set")
        if self.activity_max_entries is not None and self.activity_max_entries <= 0:
            raise ValueError("activity_max_entries must be positive when set")
