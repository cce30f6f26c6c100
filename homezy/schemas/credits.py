"""Pydantic schemas for credit ledger API"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class ExpiringGrantResponse(BaseModel):
    grant_id: UUID
    amount: int
    expires_at: datetime

    model_config = {"from_attributes": True}


class BalanceResponse(BaseModel):
    professional_id: str
    free: int
    paid: int
    total: int
    reserved: int
    available: int
    expiring_soon: list[ExpiringGrantResponse] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class TransactionResponse(BaseModel):
    id: UUID
    professional_id: str
    type: str
    amount: int
    credit_type: str
    balance_before: int
    balance_after: int
    description: str
    reference_id: str | None
    extra_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @field_validator("type", "credit_type", mode="before")
    @classmethod
    def enum_value(cls, v):
        return getattr(v, "value", v)

    model_config = {"from_attributes": True}


class TransactionPage(BaseModel):
    transactions: list[TransactionResponse]
    total: int
    limit: int
    offset: int


class GrantRequest(BaseModel):
    professional_id: str = Field(..., min_length=1, max_length=64)
    amount: int
    credit_type: str = Field(default="paid", pattern=r"^(free|paid)$")
    reason: str = Field(..., min_length=1, max_length=500)
    transaction_type: str | None = Field(None, pattern=r"^(purchase|refund|bonus)$")
    reference_id: str | None = Field(None, max_length=64)


class PurchaseRequest(BaseModel):
    professional_id: str = Field(..., min_length=1, max_length=64)
    package_id: str
    payment_reference: str | None = Field(None, max_length=64)
