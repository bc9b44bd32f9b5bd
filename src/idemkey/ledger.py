from __future__ import annotations

import threading
from dataclasses import dataclass


class InsufficientFunds(Exception):
    def __init__(self, balance: int, amount: int) -> None:
        super().__init__(f"insufficient funds: balance {balance} < amount {amount}")
        self.balance = balance
        self.amount = amount


@dataclass(frozen=True)
class ChargeResult:
    charged: int
    new_balance: int


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise ValueError("amount must be positive")


class Ledger:
    """Wallet balance, separate from the idempotency key table."""

    def __init__(self, initial_balance: int) -> None:
        if initial_balance < 0:
            raise ValueError("initial_balance must not be negative")
        self._balance = initial_balance
        self._lock = threading.Lock()

    @property
    def balance(self) -> int:
        return self._balance

    def can_cover(self, amount: int) -> bool:
        return self._balance >= amount

    def charge(self, amount: int, allow_overdraft: bool = False) -> ChargeResult:
        _require_positive(amount)
        with self._lock:
            if not allow_overdraft and self._balance < amount:
                raise InsufficientFunds(balance=self._balance, amount=amount)
            self._balance -= amount
            return ChargeResult(charged=amount, new_balance=self._balance)

    def top_up(self, amount: int) -> int:
        _require_positive(amount)
        with self._lock:
            self._balance += amount
            return self._balance

    def reset(self, balance: int) -> None:
        if balance < 0:
            raise ValueError("balance must not be negative")
        with self._lock:
            self._balance = balance
