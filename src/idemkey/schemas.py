from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from idemkey.ledger import ChargeResult


class ChargeRequest(BaseModel):
    key: str = Field(min_length=1, max_length=255)
    amount: int = Field(gt=0)


class ChargeResultModel(BaseModel):
    charged: int
    new_balance: int

    @classmethod
    def from_result(cls, result: ChargeResult) -> "ChargeResultModel":
        return cls(charged=result.charged, new_balance=result.new_balance)


class SubmitResponse(BaseModel):
    key: str
    status: Literal["completed", "conflict", "declined"]
    result: ChargeResultModel | None = None
    replayed: bool = False
    detail: str | None = None


class LedgerSnapshot(BaseModel):
    balance: int
    keys_tracked: int
    in_flight_protected: int
    in_flight_unprotected: int
