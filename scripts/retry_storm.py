#!/usr/bin/env python3
"""Retry-storm runner: impatient clients hammering the charge endpoint in-process."""

from __future__ import annotations

import argparse
import asyncio
import json
import random
import statistics
import time
from dataclasses import dataclass, field

from idemkey.config import CoordinatorConfig
from idemkey.ledger import InsufficientFunds
from idemkey.logs import configure_logging
from idemkey.service import ChargeService, new_idempotency_key


@dataclass(frozen=True)
class ClientProfile:
    min_retries: int
    max_retries: int
    max_retry_gap_seconds: float


@dataclass
class StormStats:
    sent: int = 0
    completed: int = 0
    replayed: int = 0
    conflicts: int = 0
    declined: int = 0
    latencies: list[float] = field(default_factory=list)

    def merge(self, other: "StormStats") -> None:
        self.sent += other.sent
        self.completed += other.completed
        self.replayed += other.replayed
        self.conflicts += other.conflicts
        self.declined += other.declined
        self.latencies.extend(other.latencies)


PROFILES: dict[str, ClientProfile] = {
    "double-click": ClientProfile(min_retries=1, max_retries=2, max_retry_gap_seconds=0.05),
    "flaky-network": ClientProfile(min_retries=2, max_retries=5, max_retry_gap_seconds=0.5),
}


def percentile(values: list[float], quantile: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    index = min(len(ordered) - 1, int(round((len(ordered) - 1) * quantile)))
    return ordered[index]


async def protected_client(
    client_id: int,
    service: ChargeService,
    profile: ClientProfile,
    amount: int,
) -> StormStats:
    rng = random.Random(client_id * 7919)
    stats = StormStats()
    key = new_idempotency_key()
    attempts = 1 + rng.randint(profile.min_retries, profile.max_retries)

    async def attempt(delay: float) -> None:
        await asyncio.sleep(delay)
        stats.sent += 1
        started = time.monotonic()
        response = await service.submit_with_key(key, amount)
        stats.latencies.append(time.monotonic() - started)
        if response.status == "completed":
            stats.completed += 1
            if response.replayed:
                stats.replayed += 1
        elif response.status == "conflict":
            stats.conflicts += 1
        else:
            stats.declined += 1

    delays = [0.0] + [
        rng.uniform(0.0, profile.max_retry_gap_seconds) for _ in range(attempts - 1)
    ]
    await asyncio.gather(*(attempt(delay) for delay in delays))
    # One more retry after everything settled must replay.
    await attempt(0.0)
    return stats


async def unprotected_client(
    client_id: int,
    service: ChargeService,
    profile: ClientProfile,
    amount: int,
) -> StormStats:
    rng = random.Random(client_id * 7919)
    stats = StormStats()
    attempts = 1 + rng.randint(profile.min_retries, profile.max_retries)

    async def attempt(delay: float) -> None:
        await asyncio.sleep(delay)
        stats.sent += 1
        started = time.monotonic()
        try:
            await service.submit_without_protection(amount)
        except InsufficientFunds:
            stats.declined += 1
            return
        stats.latencies.append(time.monotonic() - started)
        stats.completed += 1

    delays = [0.0] + [
        rng.uniform(0.0, profile.max_retry_gap_seconds) for _ in range(attempts - 1)
    ]
    await asyncio.gather(*(attempt(delay) for delay in delays))
    return stats


async def run_storm(
    profile_name: str,
    clients: int,
    amount: int,
    initial_balance: int,
    delay_seconds: float,
    wait_for_in_flight: bool,
) -> dict[str, object]:
    profile = PROFILES[profile_name]
    report: dict[str, object] = {"profile": profile_name, "clients": clients}

    for mode, client in (("protected", protected_client), ("unprotected", unprotected_client)):
        service = ChargeService(
            CoordinatorConfig(
                initial_balance=initial_balance,
                default_charge_amount=amount,
                processing_delay_seconds=delay_seconds,
                wait_for_in_flight=wait_for_in_flight,
            )
        )
        results = await asyncio.gather(
            *(client(i, service, profile, amount) for i in range(clients))
        )
        merged = StormStats()
        for result in results:
            merged.merge(result)

        charged = initial_balance - service.balance
        report[mode] = {
            "sent": merged.sent,
            "completed": merged.completed,
            "replayed": merged.replayed,
            "conflicts": merged.conflicts,
            "declined": merged.declined,
            "charges_applied": charged // amount,
            "duplicate_charges": max(0, charged // amount - clients),
            "final_balance": service.balance,
            "latency_p50_ms": percentile(merged.latencies, 0.50) * 1000,
            "latency_p95_ms": percentile(merged.latencies, 0.95) * 1000,
            "latency_mean_ms": (
                statistics.mean(merged.latencies) * 1000 if merged.latencies else 0.0
            ),
        }
    return report


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Compare idempotency-key protection against naive retries."
    )
    parser.add_argument("--profile", choices=sorted(PROFILES), default="flaky-network")
    parser.add_argument("--clients", type=int, default=20)
    parser.add_argument("--amount", type=int, default=100)
    parser.add_argument("--initial-balance", type=int, default=1_000_000)
    parser.add_argument(
        "--delay-seconds",
        type=float,
        default=0.2,
        help="Simulated processing latency per charge",
    )
    parser.add_argument(
        "--wait",
        action="store_true",
        help="Let duplicates wait for the in-flight result instead of getting a conflict",
    )
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    configure_logging(level=args.log_level, json_output=True)
    report = asyncio.run(
        run_storm(
            profile_name=args.profile,
            clients=args.clients,
            amount=args.amount,
            initial_balance=args.initial_balance,
            delay_seconds=args.delay_seconds,
            wait_for_in_flight=args.wait,
        )
    )
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
