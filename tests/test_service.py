from __future__ import annotations

import asyncio
import unittest

from pydantic import ValidationError

from idemkey.clock import ManualClock
from idemkey.config import CoordinatorConfig
from idemkey.key_store import RequestStatus
from idemkey.ledger import InsufficientFunds
from idemkey.service import ChargeService, new_idempotency_key


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class ChargeServiceScenarioTests(unittest.IsolatedAsyncioTestCase):
    def build(self, **overrides) -> tuple[ChargeService, ManualClock]:
        clock = ManualClock()
        config = CoordinatorConfig(**{"processing_delay_seconds": 1.5, **overrides})
        return ChargeService(config=config, clock=clock), clock

    async def test_without_protection_overlapping_calls_all_charge(self) -> None:
        service, clock = self.build(initial_balance=1000)

        tasks = [asyncio.create_task(service.submit_without_protection(100)) for _ in range(3)]
        await settle()
        self.assertEqual(service.snapshot().in_flight_unprotected, 3)
        await clock.advance(1.5)
        results = await asyncio.gather(*tasks)

        self.assertEqual(service.balance, 700)
        self.assertEqual([result.new_balance for result in results], [900, 800, 700])
        self.assertEqual(service.activity.messages().count("HTTP 200: Charged $100"), 3)

    async def test_without_protection_rejects_when_already_short(self) -> None:
        service, _ = self.build(initial_balance=50)

        with self.assertRaises(InsufficientFunds):
            await service.submit_without_protection(100)

        self.assertEqual(service.balance, 50)

    async def test_with_protection_quick_retries_charge_once(self) -> None:
        service, clock = self.build(initial_balance=1000, wait_for_in_flight=True)
        key = new_idempotency_key()

        tasks = [asyncio.create_task(service.submit_with_key(key, 100)) for _ in range(3)]
        await settle()
        await clock.advance(1.5)
        first, second, third = await asyncio.gather(*tasks)

        self.assertEqual(service.balance, 900)
        self.assertEqual(first.status, "completed")
        self.assertFalse(first.replayed)
        for duplicate in (second, third):
            self.assertEqual(duplicate.status, "completed")
            self.assertTrue(duplicate.replayed)
            self.assertEqual(duplicate.result, first.result)
        self.assertEqual(first.result.new_balance, 900)

    async def test_with_protection_in_flight_duplicates_get_conflict(self) -> None:
        service, clock = self.build(initial_balance=1000)
        key = new_idempotency_key()

        first_task = asyncio.create_task(service.submit_with_key(key, 100))
        await settle()
        second = await service.submit_with_key(key, 100)
        third = await service.submit_with_key(key, 100)
        await clock.advance(1.5)
        first = await first_task
        replay = await service.submit_with_key(key, 100)

        self.assertEqual(second.status, "conflict")
        self.assertEqual(third.status, "conflict")
        self.assertIsNone(second.result)
        self.assertEqual(first.status, "completed")
        self.assertTrue(replay.replayed)
        self.assertEqual(replay.result, first.result)
        self.assertEqual(service.balance, 900)

    async def test_insufficient_funds_declines_and_keeps_key_retryable(self) -> None:
        service, clock = self.build(initial_balance=50)
        key = new_idempotency_key()

        task = asyncio.create_task(service.submit_with_key(key, 100))
        await settle()
        await clock.advance(1.5)
        response = await task

        self.assertEqual(response.status, "declined")
        self.assertIsNone(response.result)
        self.assertIn("insufficient funds", response.detail)
        self.assertEqual(service.balance, 50)
        self.assertIsNone(service.key_store.get(key))

    async def test_retry_after_failure_succeeds_once_topped_up(self) -> None:
        service, clock = self.build(initial_balance=50)
        key = new_idempotency_key()

        declined = asyncio.create_task(service.submit_with_key(key, 100))
        await settle()
        await clock.advance(1.5)
        self.assertEqual((await declined).status, "declined")

        self.assertEqual(service.top_up(100), 150)
        retry = asyncio.create_task(service.submit_with_key(key, 100))
        await settle()
        await clock.advance(1.5)
        response = await retry

        self.assertEqual(response.status, "completed")
        self.assertFalse(response.replayed)
        self.assertEqual(response.result.new_balance, 50)
        self.assertEqual(service.balance, 50)
        self.assertEqual(service.key_store.get(key).status, RequestStatus.COMPLETED)

    async def test_balance_drops_once_per_distinct_completed_key(self) -> None:
        service, clock = self.build(initial_balance=1000, wait_for_in_flight=True)
        keys = [new_idempotency_key() for _ in range(4)]

        tasks = [
            asyncio.create_task(service.submit_with_key(key, 100))
            for key in keys
            for _ in range(3)
        ]
        await settle()
        await clock.advance(1.5)
        responses = await asyncio.gather(*tasks)
        for key in keys:
            await service.submit_with_key(key, 100)

        self.assertTrue(all(response.status == "completed" for response in responses))
        self.assertEqual(service.balance, 1000 - 100 * len(keys))


class ChargeServiceLifecycleTests(unittest.IsolatedAsyncioTestCase):
    async def test_instances_do_not_share_state(self) -> None:
        clock = ManualClock()
        config = CoordinatorConfig(processing_delay_seconds=0.0)
        left = ChargeService(config=config, clock=clock)
        right = ChargeService(config=config, clock=clock)

        await left.submit_with_key("shared-key", 100)
        response = await right.submit_with_key("shared-key", 100)

        self.assertFalse(response.replayed)
        self.assertEqual(left.balance, 900)
        self.assertEqual(right.balance, 900)

    async def test_reset_restores_wallet_and_forgets_keys(self) -> None:
        service = ChargeService(
            config=CoordinatorConfig(processing_delay_seconds=0.0),
            clock=ManualClock(),
        )
        await service.submit_with_key("key-1", 100)

        fresh_key = service.reset()

        self.assertTrue(fresh_key.startswith("key_"))
        self.assertEqual(service.balance, 1000)
        self.assertEqual(len(service.key_store), 0)
        self.assertEqual(len(service.activity), 0)
        response = await service.submit_with_key("key-1", 100)
        self.assertFalse(response.replayed)

    async def test_reset_refuses_while_charge_in_flight(self) -> None:
        clock = ManualClock()
        service = ChargeService(config=CoordinatorConfig(), clock=clock)
        task = asyncio.create_task(service.submit_with_key("key-1", 100))
        await settle()

        with self.assertRaises(RuntimeError):
            service.reset()

        await clock.advance(service.config.processing_delay_seconds)
        await task

    async def test_default_amount_comes_from_config(self) -> None:
        service = ChargeService(
            config=CoordinatorConfig(default_charge_amount=25, processing_delay_seconds=0.0),
            clock=ManualClock(),
        )

        response = await service.submit_with_key("key-1")
        baseline = await service.submit_without_protection()

        self.assertEqual(response.result.charged, 25)
        self.assertEqual(baseline.charged, 25)
        self.assertEqual(service.balance, 950)

    async def test_invalid_requests_are_rejected_before_reservation(self) -> None:
        service = ChargeService(clock=ManualClock())

        with self.assertRaises(ValidationError):
            await service.submit_with_key("", 100)
        with self.assertRaises(ValidationError):
            await service.submit_with_key("key-1", 0)

        self.assertEqual(len(service.key_store), 0)

    async def test_expired_keys_are_purged(self) -> None:
        clock = ManualClock()
        service = ChargeService(
            config=CoordinatorConfig(processing_delay_seconds=0.0, record_ttl_seconds=60.0),
            clock=clock,
        )
        await service.submit_with_key("key-1", 100)
        await clock.advance(61.0)

        self.assertEqual(service.purge_expired_keys(), 1)
        self.assertEqual(len(service.key_store), 0)

    async def test_snapshot_reports_state(self) -> None:
        service = ChargeService(
            config=CoordinatorConfig(processing_delay_seconds=0.0),
            clock=ManualClock(),
        )
        await service.submit_with_key("key-1", 100)

        snapshot = service.snapshot()

        self.assertEqual(snapshot.balance, 900)
        self.assertEqual(snapshot.keys_tracked, 1)
        self.assertEqual(snapshot.in_flight_protected, 0)
        self.assertEqual(snapshot.in_flight_unprotected, 0)

    def test_new_idempotency_keys_are_unique(self) -> None:
        keys = {new_idempotency_key() for _ in range(100)}

        self.assertEqual(len(keys), 100)


class CoordinatorConfigTests(unittest.TestCase):
    def test_rejects_invalid_values(self) -> None:
        for overrides in (
            {"initial_balance": -1},
            {"default_charge_amount": 0},
            {"processing_delay_seconds": -0.1},
            {"record_ttl_seconds": 0},
            {"activity_max_entries": 0},
        ):
            with self.subTest(overrides=overrides):
                with self.assertRaises(ValueError):
                    CoordinatorConfig(**overrides)
