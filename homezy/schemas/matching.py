"""Schemas for lead-to-professional matching"""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field

MatchTier = Literal["perfect", "excellent", "good", "fair", "poor"]

AnswerValue = str | int | float | list[str]


class QuestionScore(BaseModel):
    """How one questionnaire question contributed to the score"""
    question_id: str
    type: str
    weight: float
    score: float
    answered_by_professional: bool

    model_config = {"frozen": True}


class MatchInsights(BaseModel):
    strengths: list[str] = Field(default_factory=list)
    gaps: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class LeadMatchResult(BaseModel):
    """Compatibility of a lead with a professional's declared capabilities"""
    service_id: str
    questionnaire_version: int
    match_percentage: int = Field(ge=0, le=100)
    tier: MatchTier
    total_score: float
    total_weight: float
    breakdown: list[QuestionScore] = Field(default_factory=list)
    insights: MatchInsights = Field(default_factory=MatchInsights)

    model_config = {"frozen": True}


class MatchScoreResponse(BaseModel):
    lead_id: UUID
    professional_id: str
    lead_version: int
    profile_version: int
    result: LeadMatchResult


class ProfileUpsert(BaseModel):
    answers: dict[str, AnswerValue] = Field(default_factory=dict)


class ProfileResponse(BaseModel):
    professional_id: str
    service_id: str
    answers: dict[str, Any]
    version: int
    updated_at: datetime

    model_config = {"from_attributes": True}
