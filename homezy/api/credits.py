"""API endpoints for credit balances and ledger operations"""

import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from homezy.api.deps import Caller, ensure_self_or_admin, get_caller, get_clock, require_role
from homezy.db.database import get_db
from homezy.db.models import CreditTransactionType, CreditType
from homezy.schemas.credits import (
    BalanceResponse,
    ExpiringGrantResponse,
    GrantRequest,
    PurchaseRequest,
    TransactionPage,
    TransactionResponse,
)
from homezy.services.credit_ledger import CreditLedger
from homezy.utils.time import Clock

logger = logging.getLogger(__name__)
router = APIRouter()


def get_ledger(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> CreditLedger:
    return CreditLedger(db, clock=clock)


@router.get("/balance/{professional_id}", response_model=BalanceResponse)
async def get_balance(
    professional_id: str,
    caller: Caller = Depends(get_caller),
    ledger: CreditLedger = Depends(get_ledger),
) -> BalanceResponse:
    """Current free/paid balance plus free credits expiring soon"""
    ensure_self_or_admin(caller, professional_id)
    balance = await ledger.get_balance(professional_id)
    return BalanceResponse(
        professional_id=professional_id,
        free=balance.free,
        paid=balance.paid,
        total=balance.total,
        reserved=balance.reserved,
        available=balance.available,
        expiring_soon=[ExpiringGrantResponse.model_validate(g) for g in balance.expiring_soon],
    )


@router.get("/transactions/{professional_id}", response_model=TransactionPage)
async def get_transactions(
    professional_id: str,
    transaction_type: CreditTransactionType | None = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(get_caller),
    ledger: CreditLedger = Depends(get_ledger),
) -> TransactionPage:
    ensure_self_or_admin(caller, professional_id)
    transactions, total = await ledger.get_transactions(
        professional_id,
        limit=limit,
        offset=offset,
        transaction_type=transaction_type,
    )
    return TransactionPage(
        transactions=[TransactionResponse.model_validate(t) for t in transactions],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/verify/{professional_id}")
async def verify_account(
    professional_id: str,
    caller: Caller = Depends(get_caller),
    ledger: CreditLedger = Depends(get_ledger),
) -> dict:
    """Rebuild balances from the transaction log and report any drift"""
    ensure_self_or_admin(caller, professional_id)
    return await ledger.verify_account(professional_id)


@router.post("/grant", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def grant_credits(
    body: GrantRequest,
    caller: Caller = Depends(require_role("admin")),
    ledger: CreditLedger = Depends(get_ledger),
) -> TransactionResponse:
    transaction = await ledger.grant(
        body.professional_id,
        body.amount,
        CreditType(body.credit_type),
        body.reason,
        transaction_type=CreditTransactionType(body.transaction_type) if body.transaction_type else None,
        reference_id=body.reference_id,
        metadata={"granted_by": caller.user_id},
    )
    return TransactionResponse.model_validate(transaction)


@router.post("/purchases", response_model=list[TransactionResponse], status_code=status.HTTP_201_CREATED)
async def record_purchase(
    body: PurchaseRequest,
    caller: Caller = Depends(require_role("admin")),
    ledger: CreditLedger = Depends(get_ledger),
) -> list[TransactionResponse]:
    """Record a completed package payment"""
    transactions = await ledger.purchase_package(
        body.professional_id,
        body.package_id,
        payment_reference=body.payment_reference,
    )
    logger.info(
        f"Recorded {body.package_id} purchase for {body.professional_id}",
        extra={"professional_id": body.professional_id},
    )
    return [TransactionResponse.model_validate(t) for t in transactions]
