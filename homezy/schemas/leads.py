"""Pydantic schemas for lead and claim API"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from homezy.schemas.matching import AnswerValue, LeadMatchResult
from homezy.services.pricing import BUDGET_BRACKETS, EMIRATES, URGENCY_LEVELS


class Location(BaseModel):
    emirate: str
    neighborhood: str | None = Field(None, max_length=255)
    latitude: float | None = Field(None, ge=-90, le=90)
    longitude: float | None = Field(None, ge=-180, le=180)

    @field_validator("emirate")
    @classmethod
    def validate_emirate(cls, v: str) -> str:
        if v not in EMIRATES:
            raise ValueError(f"emirate must be one of {', '.join(EMIRATES)}")
        return v


class ServiceAnswers(BaseModel):
    service_id: str = Field(..., min_length=1, max_length=100)
    answers: dict[str, AnswerValue] = Field(default_factory=dict)


class LeadBase(BaseModel):
    title: str = Field(..., min_length=3, max_length=255)
    description: str = Field(..., min_length=10)
    category: str = Field(..., min_length=1, max_length=100)
    location: Location
    budget_bracket: str
    urgency: str = Field(default="flexible")
    timeline: str | None = Field(None, max_length=255)
    service_answers: ServiceAnswers | None = None

    @field_validator("budget_bracket")
    @classmethod
    def validate_budget_bracket(cls, v: str) -> str:
        if v not in BUDGET_BRACKETS:
            raise ValueError(f"budget_bracket must be one of {', '.join(BUDGET_BRACKETS)}")
        return v

    @field_validator("urgency")
    @classmethod
    def validate_urgency(cls, v: str) -> str:
        if v not in URGENCY_LEVELS:
            raise ValueError(f"urgency must be one of {', '.join(URGENCY_LEVELS)}")
        return v

    def to_fields(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "location": self.location.model_dump(exclude_none=True),
            "budget_bracket": self.budget_bracket,
            "urgency": self.urgency,
            "timeline": self.timeline,
            "service_answers": self.service_answers.model_dump() if self.service_answers else None,
        }


class LeadCreate(LeadBase):
    pass


class DirectLeadCreate(LeadBase):
    target_professional_id: str = Field(..., min_length=1, max_length=64)


class LeadUpdate(BaseModel):
    """Partial edit; omitted fields are left as they are"""
    title: str | None = Field(None, min_length=3, max_length=255)
    description: str | None = Field(None, min_length=10)
    category: str | None = Field(None, min_length=1, max_length=100)
    location: Location | None = None
    budget_bracket: str | None = None
    urgency: str | None = None
    timeline: str | None = Field(None, max_length=255)
    service_answers: ServiceAnswers | None = None

    @field_validator("budget_bracket")
    @classmethod
    def validate_budget_bracket(cls, v: str | None) -> str | None:
        if v is not None and v not in BUDGET_BRACKETS:
            raise ValueError(f"budget_bracket must be one of {', '.join(BUDGET_BRACKETS)}")
        return v

    @field_validator("urgency")
    @classmethod
    def validate_urgency(cls, v: str | None) -> str | None:
        if v is not None and v not in URGENCY_LEVELS:
            raise ValueError(f"urgency must be one of {', '.join(URGENCY_LEVELS)}")
        return v

    def to_changes(self) -> dict[str, Any]:
        changes = self.model_dump(exclude_unset=True, exclude_none=True)
        if self.location is not None:
            changes["location"] = self.location.model_dump(exclude_none=True)
        return changes


class LeadResponse(BaseModel):
    id: UUID
    homeowner_id: str
    title: str
    description: str
    category: str
    location: dict[str, Any]
    budget_bracket: str
    urgency: str
    timeline: str | None
    service_answers: dict[str, Any] | None
    lead_type: str
    target_professional_id: str | None
    direct_lead_status: str | None
    direct_lead_expires_at: datetime | None
    converted_to_public_at: datetime | None
    declined_at: datetime | None
    decline_reason: str | None
    reminder1_sent: bool
    reminder2_sent: bool
    claim_count: int
    max_claims: int
    status: str
    expires_at: datetime
    accepted_professional_id: str | None
    credit_cost: int = 0
    version: int
    created_at: datetime
    updated_at: datetime

    @field_validator("lead_type", "direct_lead_status", "status", mode="before")
    @classmethod
    def enum_value(cls, v):
        return getattr(v, "value", v)

    model_config = {"from_attributes": True}


class ClaimResponse(BaseModel):
    id: UUID
    lead_id: UUID
    professional_id: str
    credits_cost: int
    claimed_at: datetime
    quote_submitted: bool
    quote_submitted_at: datetime | None

    model_config = {"from_attributes": True}


class ClaimResult(BaseModel):
    claim: ClaimResponse
    already_claimed: bool = False


class DeclineRequest(BaseModel):
    reason: str | None = Field(None, max_length=1000)


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=1000)


class CancelResult(BaseModel):
    lead: LeadResponse
    refunded_credits: int


class AcceptQuoteRequest(BaseModel):
    professional_id: str = Field(..., min_length=1, max_length=64)


class MarketplaceEntry(BaseModel):
    lead: LeadResponse
    match: LeadMatchResult | None
    has_claimed: bool


class MarketplaceResponse(BaseModel):
    leads: list[MarketplaceEntry]
    total: int
    limit: int
    offset: int


class LeadPage(BaseModel):
    leads: list[LeadResponse]
    total: int
    limit: int
    offset: int
