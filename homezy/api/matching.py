"""Matching API endpoints"""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from homezy.api.deps import Caller, ensure_self_or_admin, get_caller, get_clock, require_role
from homezy.db.database import get_db
from homezy.errors import NotFoundError
from homezy.schemas.matching import MatchScoreResponse, ProfileResponse, ProfileUpsert
from homezy.services.matching import MatchingService
from homezy.services.questionnaires import get_registry
from homezy.utils.time import Clock

logger = logging.getLogger(__name__)
router = APIRouter()


def get_matching_service(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> MatchingService:
    return MatchingService(db, clock=clock)


@router.get("/score", response_model=MatchScoreResponse)
async def match_score(
    lead_id: UUID = Query(...),
    professional_id: str = Query(...),
    caller: Caller = Depends(get_caller),
    service: MatchingService = Depends(get_matching_service),
) -> MatchScoreResponse:
    """Score a lead against a professional's declared answers"""
    if caller.role == "pro":
        ensure_self_or_admin(caller, professional_id)
    lead, profile, result = await service.score(lead_id, professional_id)
    return MatchScoreResponse(
        lead_id=lead.id,
        professional_id=professional_id,
        lead_version=lead.version,
        profile_version=profile.version if profile else 0,
        result=result,
    )


@router.get("/questionnaires")
async def list_questionnaires() -> dict[str, Any]:
    registry = get_registry()
    return {"services": registry.service_ids()}


@router.get("/questionnaires/{service_id}")
async def get_questionnaire(service_id: str) -> dict[str, Any]:
    return get_registry().get(service_id).to_dict()


@router.get("/profiles/{professional_id}/{service_id}", response_model=ProfileResponse)
async def get_profile(
    professional_id: str,
    service_id: str,
    caller: Caller = Depends(get_caller),
    service: MatchingService = Depends(get_matching_service),
) -> ProfileResponse:
    profile = await service.get_profile(professional_id, service_id)
    if profile is None:
        raise NotFoundError("ProServiceProfile", f"{professional_id}/{service_id}")
    return ProfileResponse.model_validate(profile)


@router.put("/profiles/{professional_id}/{service_id}", response_model=ProfileResponse)
async def upsert_profile(
    professional_id: str,
    service_id: str,
    body: ProfileUpsert,
    caller: Caller = Depends(require_role("pro", "admin")),
    service: MatchingService = Depends(get_matching_service),
) -> ProfileResponse:
    """Declare which answers a professional can serve for a service"""
    ensure_self_or_admin(caller, professional_id)
    profile = await service.upsert_profile(professional_id, service_id, body.answers)
    return ProfileResponse.model_validate(profile)
