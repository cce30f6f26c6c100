"""Lead lifecycle and claim API endpoints"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from homezy.api.deps import Caller, get_app_notifier, get_caller, get_clock, require_role
from homezy.db.database import get_db
from homezy.db.models import DirectLeadStatus, Lead, LeadStatus
from homezy.errors import AlreadyClaimedError, PermissionDeniedError
from homezy.schemas.leads import (
    AcceptQuoteRequest,
    CancelRequest,
    CancelResult,
    ClaimResponse,
    ClaimResult,
    DeclineRequest,
    DirectLeadCreate,
    LeadCreate,
    LeadPage,
    LeadResponse,
    LeadUpdate,
    MarketplaceEntry,
    MarketplaceResponse,
)
from homezy.services.claims import ClaimCoordinator
from homezy.services.matching import MatchingService
from homezy.services.notifications import Notifier
from homezy.services.pricing import calculate_credit_cost
from homezy.utils.time import Clock

logger = logging.getLogger(__name__)
router = APIRouter()


def to_lead_response(lead: Lead) -> LeadResponse:
    response = LeadResponse.model_validate(lead)
    return response.model_copy(update={"credit_cost": calculate_credit_cost(lead.budget_bracket, lead.urgency)})


def get_coordinator(
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_app_notifier),
    clock: Clock = Depends(get_clock),
) -> ClaimCoordinator:
    return ClaimCoordinator(db, notifier=notifier, clock=clock)


@router.post("/", response_model=LeadResponse, status_code=status.HTTP_201_CREATED)
async def create_lead(
    lead_data: LeadCreate,
    caller: Caller = Depends(require_role("homeowner")),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> LeadResponse:
    """Create a public lead"""
    lead = await coordinator.leads.create_lead(caller.user_id, **lead_data.to_fields())
    return to_lead_response(lead)


@router.post("/direct", response_model=LeadResponse, status_code=status.HTTP_201_CREATED)
async def create_direct_lead(
    lead_data: DirectLeadCreate,
    caller: Caller = Depends(require_role("homeowner")),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> LeadResponse:
    """Send a lead to one professional with an exclusive response window"""
    lead = await coordinator.create_direct_lead(
        caller.user_id,
        lead_data.target_professional_id,
        **lead_data.to_fields(),
    )
    return to_lead_response(lead)


@router.get("/marketplace", response_model=MarketplaceResponse)
async def marketplace(
    category: str | None = Query(None),
    emirate: str | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(require_role("pro")),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> MarketplaceResponse:
    """Claimable public leads ranked by match for the calling professional"""
    entries, total = await MatchingService(db, clock=clock).rank_marketplace(
        caller.user_id,
        category=category,
        emirate=emirate,
        limit=limit,
        offset=offset,
    )
    return MarketplaceResponse(
        leads=[
            MarketplaceEntry(
                lead=to_lead_response(entry["lead"]),
                match=entry["match"],
                has_claimed=entry["has_claimed"],
            )
            for entry in entries
        ],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/mine", response_model=LeadPage)
async def my_leads(
    lead_status: LeadStatus | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(require_role("homeowner")),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> LeadPage:
    """The calling homeowner's leads, newest first"""
    leads, total = await coordinator.leads.list_homeowner_leads(
        caller.user_id,
        status=lead_status,
        limit=limit,
        offset=offset,
    )
    return LeadPage(
        leads=[to_lead_response(lead) for lead in leads],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/direct/mine", response_model=list[LeadResponse])
async def my_direct_leads(
    direct_status: DirectLeadStatus | None = Query(None, alias="status"),
    caller: Caller = Depends(require_role("pro")),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> list[LeadResponse]:
    """Direct leads sent to the calling professional"""
    leads = await coordinator.leads.list_direct_leads_for_professional(caller.user_id, direct_status)
    return [to_lead_response(lead) for lead in leads]


@router.get("/claims/mine", response_model=list[ClaimResponse])
async def my_claims(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(require_role("pro")),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> list[ClaimResponse]:
    claims = await coordinator.leads.list_claims_for_professional(caller.user_id, limit=limit, offset=offset)
    return [ClaimResponse.model_validate(claim) for claim in claims]


@router.get("/{lead_id}", response_model=LeadResponse)
async def get_lead(
    lead_id: UUID,
    caller: Caller = Depends(get_caller),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> LeadResponse:
    lead = await coordinator.leads.get_lead(lead_id)
    if caller.role == "homeowner" and lead.homeowner_id != caller.user_id:
        raise PermissionDeniedError("You can only view your own leads", lead_id=lead_id)
    return to_lead_response(lead)


@router.patch("/{lead_id}", response_model=LeadResponse)
async def update_lead(
    lead_id: UUID,
    body: LeadUpdate,
    caller: Caller = Depends(require_role("homeowner")),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> LeadResponse:
    """Edit a lead before any professional has claimed it"""
    lead = await coordinator.leads.update_lead(lead_id, caller.user_id, **body.to_changes())
    return to_lead_response(lead)


@router.post("/{lead_id}/claim", response_model=ClaimResult, status_code=status.HTTP_201_CREATED)
async def claim_lead(
    lead_id: UUID,
    caller: Caller = Depends(require_role("pro")),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
):
    """Claim a lead; retrying an earlier successful claim echoes it back"""
    try:
        claim = await coordinator.claim_lead(caller.user_id, lead_id)
    except AlreadyClaimedError as e:
        logger.info(
            f"Repeated claim on lead {lead_id} by {caller.user_id}",
            extra={"lead_id": lead_id, "professional_id": caller.user_id},
        )
        result = ClaimResult(claim=ClaimResponse.model_validate(e.claim), already_claimed=True)
        return JSONResponse(status_code=status.HTTP_200_OK, content=result.model_dump(mode="json"))
    return ClaimResult(claim=ClaimResponse.model_validate(claim))


@router.post("/{lead_id}/accept-direct", response_model=ClaimResult, status_code=status.HTTP_201_CREATED)
async def accept_direct_lead(
    lead_id: UUID,
    caller: Caller = Depends(require_role("pro")),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
):
    try:
        claim = await coordinator.accept_direct_lead(caller.user_id, lead_id)
    except AlreadyClaimedError as e:
        result = ClaimResult(claim=ClaimResponse.model_validate(e.claim), already_claimed=True)
        return JSONResponse(status_code=status.HTTP_200_OK, content=result.model_dump(mode="json"))
    return ClaimResult(claim=ClaimResponse.model_validate(claim))


@router.post("/{lead_id}/decline-direct", response_model=LeadResponse)
async def decline_direct_lead(
    lead_id: UUID,
    body: DeclineRequest | None = None,
    caller: Caller = Depends(require_role("pro")),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> LeadResponse:
    lead = await coordinator.decline_direct_lead(caller.user_id, lead_id, body.reason if body else None)
    return to_lead_response(lead)


@router.post("/{lead_id}/quote", response_model=ClaimResponse)
async def submit_quote(
    lead_id: UUID,
    caller: Caller = Depends(require_role("pro")),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> ClaimResponse:
    claim = await coordinator.submit_quote(caller.user_id, lead_id)
    return ClaimResponse.model_validate(claim)


@router.post("/{lead_id}/accept-quote", response_model=LeadResponse)
async def accept_quote(
    lead_id: UUID,
    body: AcceptQuoteRequest,
    caller: Caller = Depends(require_role("homeowner")),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> LeadResponse:
    lead = await coordinator.accept_quote(caller.user_id, lead_id, body.professional_id)
    return to_lead_response(lead)


@router.post("/{lead_id}/cancel", response_model=CancelResult)
async def cancel_lead(
    lead_id: UUID,
    body: CancelRequest | None = None,
    caller: Caller = Depends(require_role("homeowner")),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> CancelResult:
    lead, refunded = await coordinator.cancel_lead(caller.user_id, lead_id, body.reason if body else None)
    return CancelResult(lead=to_lead_response(lead), refunded_credits=refunded)


@router.get("/{lead_id}/claims", response_model=list[ClaimResponse])
async def lead_claims(
    lead_id: UUID,
    caller: Caller = Depends(require_role("homeowner", "admin")),
    coordinator: ClaimCoordinator = Depends(get_coordinator),
) -> list[ClaimResponse]:
    lead = await coordinator.leads.get_lead(lead_id)
    if caller.role == "homeowner" and lead.homeowner_id != caller.user_id:
        raise PermissionDeniedError("You can only view claims on your own leads", lead_id=lead_id)
    claims = await coordinator.leads.list_claims_for_lead(lead_id)
    return [ClaimResponse.model_validate(claim) for claim in claims]
